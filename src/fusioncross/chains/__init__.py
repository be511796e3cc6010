"""Chain clients: interfaces, simulated chain and HTTP gateway client."""

from fusioncross.chains.base import (
    ChainClient,
    ChainRouter,
    EscrowReceipt,
    LockChainClient,
    SettlementChainClient,
)
from fusioncross.chains.factory import create_router
from fusioncross.chains.gateway import GatewayChainClient
from fusioncross.chains.simulated import SimulatedChain

__all__ = [
    "ChainClient",
    "ChainRouter",
    "EscrowReceipt",
    "GatewayChainClient",
    "LockChainClient",
    "SettlementChainClient",
    "SimulatedChain",
    "create_router",
]
