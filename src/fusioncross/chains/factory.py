"""Chain client factory."""

import logging
from typing import Optional

from fusioncross.chains.base import ChainRouter
from fusioncross.chains.gateway import GatewayChainClient
from fusioncross.chains.simulated import SimulatedChain
from fusioncross.config import Settings, get_settings

logger = logging.getLogger(__name__)


def create_router(settings: Optional[Settings] = None) -> ChainRouter:
    """Build the chain router for the configured mode.

    - dry_run (default): in-memory simulated chains
    - otherwise: signing gateway clients for chains A and B

    Returns:
        ChainRouter over chain A and chain B
    """
    settings = settings or get_settings()

    if settings.dry_run:
        logger.info("Dry-run mode: using simulated chains")
        return ChainRouter(
            SimulatedChain(settings.chain_a_name),
            SimulatedChain(settings.chain_b_name),
        )

    return ChainRouter(
        GatewayChainClient(
            name=settings.chain_a_name,
            gateway_url=settings.chain_a_gateway_url,
            feed_url=settings.chain_a_feed_url,
            api_key=settings.gateway_api_key,
            timeout=settings.rpc_timeout_seconds,
            poll_interval=settings.relay_poll_interval,
        ),
        GatewayChainClient(
            name=settings.chain_b_name,
            gateway_url=settings.chain_b_gateway_url,
            feed_url=settings.chain_b_feed_url,
            api_key=settings.gateway_api_key,
            timeout=settings.rpc_timeout_seconds,
            poll_interval=settings.relay_poll_interval,
        ),
    )
