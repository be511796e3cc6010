"""Per-swap Dutch auction engine.

Each swap gets its own AuctionState and its own lock; auctions for different
swaps never block each other. Bid acceptance, slot reservation and the
persistence hook run inside the swap's critical section, so two concurrent
bidders can never be handed the same slot.
"""

import logging
import time
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from fusioncross.auction.allocator import FillAllocator, percent_for_units
from fusioncross.auction.pricing import DEFAULT_SCHEDULE, DecaySchedule, Number, to_decimal
from fusioncross.errors import (
    AlreadyActive,
    Expired,
    InsufficientRemaining,
    InvalidResolver,
    LimitPriceExceeded,
    NoActiveAuction,
    OutOfRange,
    StateConflict,
)
from fusioncross.resolvers.directory import ResolverDirectory
from fusioncross.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Bid:
    """An accepted fill."""

    resolver_id: str
    price: Decimal
    units: int
    percent_filled: Decimal
    slot_indices: tuple[int, ...]
    timestamp: float
    sequence: int

    def to_dict(self) -> dict:
        return {
            "resolver_id": self.resolver_id,
            "price": str(self.price),
            "units": self.units,
            "percent_filled": str(self.percent_filled),
            "slot_indices": list(self.slot_indices),
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }


BidHook = Callable[[str, Bid], Awaitable[None]]


@dataclass
class AuctionState:
    """Live pricing context for one swap."""

    swap_id: str
    start_time: float
    end_time: float
    initial_price: Decimal
    min_price_floor_ratio: Decimal
    total_units: int
    allocator: FillAllocator = field(repr=False)
    expires_at: Optional[float] = None
    units_filled: int = 0
    bids: list[Bid] = field(default_factory=list)
    active: bool = True
    next_sequence: int = 0

    @property
    def remaining_units(self) -> int:
        return self.total_units - self.units_filled

    @property
    def fill_fraction(self) -> Decimal:
        return Decimal(self.units_filled) / Decimal(self.total_units)

    def elapsed_fraction(self, now: float) -> Decimal:
        duration = self.end_time - self.start_time
        if duration <= 0:
            return Decimal(1)
        return to_decimal(min(max((now - self.start_time) / duration, 0.0), 1.0))

    def window_open(self, now: float) -> bool:
        return self.active and now < self.end_time

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


@dataclass(frozen=True)
class AuctionStatus:
    """Read-only snapshot of an auction."""

    swap_id: str
    active: bool
    current_price: Decimal
    initial_price: Decimal
    floor_price: Decimal
    total_units: int
    units_filled: int
    remaining_units: int
    start_time: float
    end_time: float
    time_remaining: float
    bids: tuple[Bid, ...]

    def to_dict(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "active": self.active,
            "current_price": str(self.current_price),
            "initial_price": str(self.initial_price),
            "floor_price": str(self.floor_price),
            "total_units": self.total_units,
            "units_filled": self.units_filled,
            "remaining_units": self.remaining_units,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "time_remaining": self.time_remaining,
            "bids": [b.to_dict() for b in self.bids],
        }


@dataclass(frozen=True)
class AuctionResult:
    """Outcome of a closed auction."""

    swap_id: str
    winning_bids: tuple[Bid, ...]
    total_filled: int
    final_price: Decimal


class DutchAuctionEngine:
    """Runs one Dutch auction per swap id."""

    def __init__(
        self,
        resolvers: ResolverDirectory,
        schedule: DecaySchedule = DEFAULT_SCHEDULE,
        clock: Callable[[], float] = time.time,
        on_bid: Optional[BidHook] = None,
        lock_timeout: Optional[float] = 30.0,
    ):
        """Initialize the engine.

        Args:
            resolvers: Known resolver profiles
            schedule: Price decay parameters
            clock: Time source (unix seconds)
            on_bid: Awaited inside the critical section for every accepted
                bid; if it raises, the reservation is rolled back
            lock_timeout: Seconds to wait for a swap's lock
        """
        self.resolvers = resolvers
        self.schedule = schedule
        self.clock = clock
        self.on_bid = on_bid
        self._auctions: dict[str, AuctionState] = {}
        self._locks = KeyedLock("auction", timeout=lock_timeout)

    def get(self, swap_id: str) -> Optional[AuctionState]:
        return self._auctions.get(swap_id)

    def is_active(self, swap_id: str) -> bool:
        state = self._auctions.get(swap_id)
        return state is not None and state.window_open(self.clock())

    def active_swaps(self) -> list[str]:
        return [s.swap_id for s in self._auctions.values() if s.active]

    async def start_auction(
        self,
        swap_id: str,
        total_units: int,
        initial_price: Number,
        duration: float,
        expires_at: Optional[float] = None,
    ) -> AuctionState:
        """Open the auction for a swap.

        Raises:
            AlreadyActive: If the swap's auction is running
            StateConflict: If the swap's auction already ran
            OutOfRange: For a non-positive price, duration or unit count
            Expired: If the swap's timelock already passed
        """
        price = to_decimal(initial_price)
        if price <= 0 or duration <= 0 or total_units < 1:
            raise OutOfRange(
                "Auction needs a positive price, duration and unit count", swap_id=swap_id
            )

        async with self._locks.hold(swap_id, operation="start_auction"):
            existing = self._auctions.get(swap_id)
            if existing is not None:
                if existing.active:
                    raise AlreadyActive(f"Auction for {swap_id} already running", swap_id=swap_id)
                raise StateConflict(f"Auction for {swap_id} already ran", swap_id=swap_id)

            now = self.clock()
            if expires_at is not None and now > expires_at:
                raise Expired(f"Swap {swap_id} expired", swap_id=swap_id)

            state = AuctionState(
                swap_id=swap_id,
                start_time=now,
                end_time=now + duration,
                initial_price=price,
                min_price_floor_ratio=self.schedule.floor_ratio,
                total_units=total_units,
                allocator=FillAllocator(total_units),
                expires_at=expires_at,
            )
            self._auctions[swap_id] = state

        logger.info(
            f"Auction started for {swap_id}: {total_units} units from {price}, "
            f"floor {self.schedule.floor_price(price)}, {duration}s"
        )
        return state

    def ensure_open(self, swap_id: str) -> AuctionState:
        """Return the auction if it still takes bids.

        Raises:
            Expired: The swap's timelock passed
            NoActiveAuction: No auction, auction closed, or window elapsed
        """
        now = self.clock()
        state = self._auctions.get(swap_id)
        if state is not None and state.is_expired(now):
            raise Expired(f"Swap {swap_id} expired", swap_id=swap_id)
        if state is None or not state.window_open(now):
            raise NoActiveAuction(f"No active auction for swap {swap_id}", swap_id=swap_id)
        return state

    def _require(self, swap_id: str) -> AuctionState:
        state = self._auctions.get(swap_id)
        if state is None:
            raise NoActiveAuction(f"No auction for swap {swap_id}", swap_id=swap_id)
        return state

    def _price(self, state: AuctionState, now: float) -> Decimal:
        return self.schedule.price(
            state.initial_price, state.elapsed_fraction(now), state.fill_fraction
        )

    def current_price(self, swap_id: str) -> Decimal:
        """Current price of a swap's auction.

        Raises:
            NoActiveAuction: If the swap has no auction
        """
        return self._price(self._require(swap_id), self.clock())

    def status(self, swap_id: str) -> AuctionStatus:
        """Snapshot of a swap's auction. Safe to poll.

        Raises:
            NoActiveAuction: If the swap has no auction
        """
        state = self._require(swap_id)
        now = self.clock()
        return AuctionStatus(
            swap_id=swap_id,
            active=state.window_open(now),
            current_price=self._price(state, now),
            initial_price=state.initial_price,
            floor_price=self.schedule.floor_price(state.initial_price),
            total_units=state.total_units,
            units_filled=state.units_filled,
            remaining_units=state.remaining_units,
            start_time=state.start_time,
            end_time=state.end_time,
            time_remaining=max(0.0, state.end_time - now) if state.active else 0.0,
            bids=tuple(state.bids),
        )

    async def submit_bid(
        self,
        swap_id: str,
        resolver_id: str,
        requested_units: int,
        limit_price: Optional[Number] = None,
    ) -> Bid:
        """Accept a resolver's fill at the current price.

        Args:
            swap_id: Swap being auctioned
            resolver_id: Bidding resolver
            requested_units: Number of slots wanted
            limit_price: Highest price the resolver accepts (None = any)

        Returns:
            The accepted bid with its reserved slot indices

        Raises:
            Expired: The swap's timelock passed
            NoActiveAuction: No auction, auction closed, or window elapsed
            InvalidResolver: Unknown resolver
            OutOfRange: Units not a positive integer or outside the resolver's bounds
            InsufficientRemaining: Fewer slots left than requested
            LimitPriceExceeded: Current price is above the resolver's limit
        """
        async with self._locks.hold(swap_id, operation="submit_bid"):
            state = self.ensure_open(swap_id)
            now = self.clock()

            profile = self.resolvers.get(resolver_id)
            if profile is None:
                raise InvalidResolver(f"Unknown resolver {resolver_id}", swap_id=swap_id)

            if (
                not isinstance(requested_units, int)
                or isinstance(requested_units, bool)
                or requested_units < 1
                or requested_units > state.total_units
            ):
                raise OutOfRange(
                    f"Requested units must be 1..{state.total_units}, got {requested_units!r}",
                    swap_id=swap_id,
                )
            percent = percent_for_units(requested_units, state.total_units)
            if not profile.allows_percent(percent):
                raise OutOfRange(
                    f"{percent}% is outside {profile.name}'s bounds "
                    f"{profile.min_fill_percent}-{profile.max_fill_percent}%",
                    swap_id=swap_id,
                )
            if requested_units > state.remaining_units:
                raise InsufficientRemaining(
                    f"Requested {requested_units} units, {state.remaining_units} remaining",
                    swap_id=swap_id,
                )

            price = self._price(state, now)
            if limit_price is not None and price > to_decimal(limit_price):
                raise LimitPriceExceeded(
                    f"Current price {price} is above limit {limit_price}", swap_id=swap_id
                )

            indices = state.allocator.reserve(requested_units)
            bid = Bid(
                resolver_id=resolver_id,
                price=price,
                units=requested_units,
                percent_filled=percent,
                slot_indices=tuple(indices),
                timestamp=now,
                sequence=state.next_sequence,
            )
            if self.on_bid is not None:
                try:
                    await self.on_bid(swap_id, bid)
                except Exception:
                    state.allocator.release(indices)
                    logger.warning(f"Bid by {resolver_id} on {swap_id} not persisted, rolled back")
                    raise

            state.bids.append(bid)
            state.units_filled += requested_units
            state.next_sequence += 1

        logger.info(
            f"Bid accepted on {swap_id}: {profile.name} took {percent}% "
            f"(slots {list(indices)}) at {price}; {state.remaining_units} units left"
        )
        return bid

    async def end_auction(self, swap_id: str) -> AuctionResult:
        """Close the auction and rank its bids.

        Bids are ordered by (price, timestamp, sequence) and truncated to the
        swap's unit count.

        Raises:
            NoActiveAuction: If the auction is missing or already closed
        """
        async with self._locks.hold(swap_id, operation="end_auction"):
            state = self._require(swap_id)
            if not state.active:
                raise NoActiveAuction(f"Auction for {swap_id} already closed", swap_id=swap_id)

            final_price = self._price(state, self.clock())
            state.active = False

            winners: list[Bid] = []
            filled = 0
            for bid in sorted(state.bids, key=lambda b: (b.price, b.timestamp, b.sequence)):
                if filled >= state.total_units:
                    break
                take = min(bid.units, state.total_units - filled)
                if take < bid.units:
                    bid = replace(
                        bid,
                        units=take,
                        percent_filled=percent_for_units(take, state.total_units),
                        slot_indices=bid.slot_indices[:take],
                    )
                winners.append(bid)
                filled += take

        logger.info(f"Auction ended for {swap_id}: {filled}/{state.total_units} units filled")
        return AuctionResult(
            swap_id=swap_id,
            winning_bids=tuple(winners),
            total_filled=filled,
            final_price=final_price,
        )

    async def cancel(self, swap_id: str) -> bool:
        """Stop an auction without a result (refund path). Returns True if it was open."""
        state = self._auctions.get(swap_id)
        if state is None:
            return False
        async with self._locks.hold(swap_id, operation="cancel"):
            was_active = state.active
            state.active = False
        if was_active:
            logger.info(f"Auction for {swap_id} cancelled")
        return was_active

    def forget(self, swap_id: str) -> None:
        """Drop a finished auction's state."""
        state = self._auctions.get(swap_id)
        if state is not None and not state.active:
            del self._auctions[swap_id]
            self._locks.discard(swap_id)

    def resolver_stats(self, swap_id: str) -> dict[str, dict]:
        """Per-resolver fill statistics for a swap's auction.

        Raises:
            NoActiveAuction: If the swap has no auction
        """
        state = self._require(swap_id)
        stats = {}
        for profile in self.resolvers:
            bids = [b for b in state.bids if b.resolver_id == profile.id]
            units = sum(b.units for b in bids)
            average = sum((b.price for b in bids), Decimal(0)) / len(bids) if bids else Decimal(0)
            stats[profile.id] = {
                "name": profile.name,
                "bid_count": len(bids),
                "units_filled": units,
                "average_price": str(average),
                "percentage": str(percent_for_units(units, state.total_units)),
            }
        return stats
