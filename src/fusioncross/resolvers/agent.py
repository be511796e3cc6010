"""Simulated resolver agents.

Each agent is an independent task: it polls the auction, asks its strategy
whether to bid, and after an accepted bid locks its counter-value on the
settlement chain. Agents only see the coordinator's public auction
operations; the engine is their sole synchronization point.
"""

import asyncio
import logging
import random
from typing import Optional

from fusioncross.auction.engine import AuctionStatus, Bid
from fusioncross.errors import (
    Expired,
    InvalidRequestError,
    NoActiveAuction,
    StateConflict,
    SwapError,
)
from fusioncross.resolvers.base import BiddingStrategy, MarketView, ResolverProfile
from fusioncross.resolvers.directory import ResolverDirectory
from fusioncross.resolvers.strategies import build_strategy
from fusioncross.utils.tasks import spawn

logger = logging.getLogger(__name__)


def market_view(status: AuctionStatus) -> MarketView:
    """Strategy-facing view of an auction snapshot."""
    return MarketView(
        swap_id=status.swap_id,
        current_price=status.current_price,
        initial_price=status.initial_price,
        floor_price=status.floor_price,
        total_units=status.total_units,
        remaining_units=status.remaining_units,
        time_remaining=status.time_remaining,
    )


class ResolverAgent:
    """One resolver bidding on one swap.

    ``service`` is the swap coordinator; the agent uses its
    ``get_auction_status``, ``submit_bid`` and ``lock_resolver_escrow``.
    """

    def __init__(
        self,
        profile: ResolverProfile,
        strategy: BiddingStrategy,
        service,
        poll_interval: float = 3.0,
    ):
        self.profile = profile
        self.strategy = strategy
        self.service = service
        self.poll_interval = poll_interval
        self.bids: list[Bid] = []

    async def run(self, swap_id: str, stop_event: asyncio.Event) -> list[Bid]:
        """Bid on a swap until the auction closes, it expires, or ``stop_event`` is set.

        Returns:
            Bids accepted for this resolver
        """
        name = self.profile.name
        logger.debug(f"{name} watching auction {swap_id}")

        while not stop_event.is_set():
            try:
                status = await self.service.get_auction_status(swap_id)
            except (NoActiveAuction, Expired):
                break
            if not status.active or status.remaining_units == 0:
                break

            intent = self.strategy.decide(market_view(status), self.profile)
            if intent is not None:
                delay = self.strategy.response_delay()
                if delay and await self._wait(stop_event, delay):
                    break
                if not await self._bid(swap_id, intent.units, intent.limit_price):
                    break

            if await self._wait(stop_event, self.poll_interval):
                break

        logger.debug(f"{name} done with auction {swap_id}: {len(self.bids)} bids")
        return self.bids

    async def _bid(self, swap_id: str, units: int, limit_price) -> bool:
        """Submit one bid. Returns False when the agent should stop."""
        try:
            bid = await self.service.submit_bid(
                swap_id, self.profile.id, units=units, limit_price=limit_price
            )
        except (Expired, NoActiveAuction):
            return False
        except (InvalidRequestError, StateConflict) as e:
            # Lost the race for the remaining slots or the price moved
            logger.debug(f"{self.profile.name} bid on {swap_id} rejected: {e.message}")
            return True

        self.bids.append(bid)
        logger.info(
            f"{self.profile.name} won {bid.units} slots of {swap_id} at {bid.price}"
        )
        try:
            await self.service.lock_resolver_escrow(swap_id, self.profile.id)
        except SwapError as e:
            logger.error(
                f"{self.profile.name} could not lock escrow for {swap_id}: {e.message}"
            )
        return True

    @staticmethod
    async def _wait(stop_event: asyncio.Event, timeout: float) -> bool:
        """Sleep up to ``timeout``; True if the stop event fired."""
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


class ResolverPool:
    """Runs one agent task per resolver for each auctioned swap."""

    def __init__(
        self,
        directory: ResolverDirectory,
        service,
        poll_interval: float = 3.0,
        seed: Optional[int] = None,
    ):
        self.directory = directory
        self.service = service
        self.poll_interval = poll_interval
        self.seed = seed
        self._stops: dict[str, asyncio.Event] = {}
        self._tasks: dict[str, list[asyncio.Task]] = {}

    def _rng(self, swap_id: str, resolver_id: str) -> random.Random:
        if self.seed is None:
            return random.Random()
        return random.Random(f"{self.seed}:{swap_id}:{resolver_id}")

    def running(self, swap_id: str) -> bool:
        return any(not t.done() for t in self._tasks.get(swap_id, []))

    def start(self, swap_id: str) -> list[ResolverAgent]:
        """Launch agents for a swap whose auction just started."""
        if self.running(swap_id):
            return []

        stop_event = asyncio.Event()
        agents, tasks = [], []
        for profile in self.directory:
            strategy = build_strategy(profile, self._rng(swap_id, profile.id))
            agent = ResolverAgent(profile, strategy, self.service, self.poll_interval)
            agents.append(agent)
            tasks.append(
                spawn(agent.run(swap_id, stop_event), name=f"resolver-{profile.id}-{swap_id}")
            )
        self._stops[swap_id] = stop_event
        self._tasks[swap_id] = tasks
        logger.info(f"Started {len(tasks)} resolver agents for swap {swap_id}")
        return agents

    async def stop(self, swap_id: str, wait: bool = True) -> None:
        """Signal a swap's agents to stop.

        Args:
            swap_id: Swap whose agents should stop
            wait: Also wait for the agent tasks (never the calling task).
                Callers holding the swap's lock must pass False, since an
                agent may be blocked on that lock.
        """
        stop_event = self._stops.pop(swap_id, None)
        tasks = self._tasks.pop(swap_id, [])
        if stop_event is not None:
            stop_event.set()
        if not wait:
            return
        current = asyncio.current_task()
        others = [t for t in tasks if t is not current]
        if others:
            await asyncio.gather(*others, return_exceptions=True)

    async def shutdown(self) -> None:
        for swap_id in list(self._tasks):
            await self.stop(swap_id)
