"""Swap registry: durable records of swaps, slots, bids and escrows."""

from fusioncross.registry.database import close_db, get_db, init_db, session_scope
from fusioncross.registry.models import (
    Base,
    BidRecord,
    ChainTransaction,
    ContractSlotRecord,
    EscrowStatus,
    ResolverEscrow,
    SlotStatus,
    SwapDirection,
    SwapRecord,
    SwapStatus,
)
from fusioncross.registry.repository import SwapRepository

__all__ = [
    "Base",
    "BidRecord",
    "ChainTransaction",
    "ContractSlotRecord",
    "EscrowStatus",
    "ResolverEscrow",
    "SlotStatus",
    "SwapDirection",
    "SwapRecord",
    "SwapRepository",
    "SwapStatus",
    "close_db",
    "get_db",
    "init_db",
    "session_scope",
]
