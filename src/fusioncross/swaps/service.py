"""Swap coordinator.

Ties the registry, the auction engine, the resolver agents, the chain
clients and the relay into the operations exposed by the API:

1. start_swap: register the swap and its hash lock
2. lock_funds / confirm_lock: initiator's HTLC on the lock chain
3. start_auction: Dutch auction over N fill slots, resolvers bid
4. lock_resolver_escrow / record_escrow: resolvers lock counter-value
5. close_auction: settled_on_b, the relay starts watching the escrows
6. claim_settlement: recipient claims escrows, revealing the secret
7. relay claims every assigned slot, swap completes
8. refund: after the timelock, unclaimed funds go back to the initiator
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from decimal import ROUND_DOWN, Decimal
from typing import Callable, Optional, Union

from fusioncross.auction.allocator import percent_for_units, units_for_percent
from fusioncross.auction.engine import AuctionResult, AuctionStatus, Bid, DutchAuctionEngine
from fusioncross.auction.pricing import DEFAULT_SCHEDULE, DecaySchedule, Number, to_decimal
from fusioncross.chains.base import ChainRouter
from fusioncross.chains.factory import create_router
from fusioncross.config import Settings, get_settings
from fusioncross.crypto import (
    generate_secret,
    hash_secret,
    normalize_hash_lock,
    parse_secret,
    verify_preimage,
)
from fusioncross.errors import (
    AlreadyActive,
    AlreadyClaimed,
    Expired,
    InvalidAmount,
    InvalidPreimage,
    InvalidRequestError,
    InvalidResolver,
    NoActiveAuction,
    RefundNotAllowed,
    StateConflict,
    SwapError,
)
from fusioncross.registry.database import SessionScope, get_db
from fusioncross.registry.models import (
    LOCKED_STATUSES,
    SETTLED_STATUSES,
    EscrowStatus,
    SlotStatus,
    SwapDirection,
    SwapRecord,
    SwapStatus,
)
from fusioncross.registry.repository import SwapRepository
from fusioncross.relay.relay import CrossChainRelay
from fusioncross.resolvers.agent import ResolverPool
from fusioncross.resolvers.directory import ResolverDirectory
from fusioncross.swaps.state import SwapStateMachine
from fusioncross.utils.locks import KeyedLock
from fusioncross.utils.retry import RetryPolicy, call_with_retry
from fusioncross.utils.tasks import spawn

logger = logging.getLogger(__name__)

# Statuses in which resolvers may still attach escrows
ESCROW_STATUSES = frozenset(
    {SwapStatus.LOCKED_ON_A, SwapStatus.LOCKED_ON_B, SwapStatus.SETTLED_ON_B}
)


@dataclass
class StartedSwap:
    """Result of registering a swap.

    ``secret`` is only set when the coordinator generated it; it is returned
    once and is not stored until it is revealed on the settlement chain.
    """

    swap_id: str
    hash_lock: str
    timelock_expiry: int
    total_units: int
    secret: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "hash_lock": self.hash_lock,
            "timelock_expiry": self.timelock_expiry,
            "total_units": self.total_units,
            "secret": self.secret,
        }


@dataclass
class SlotView:
    index: int
    status: str
    owner_resolver_id: Optional[str]
    claim_ref: Optional[str]
    attempts: int
    last_error: Optional[str]

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "status": self.status,
            "owner_resolver_id": self.owner_resolver_id,
            "claim_ref": self.claim_ref,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }


@dataclass
class SwapStatusView:
    """Externally visible state of a swap, with partial completion made explicit."""

    swap_id: str
    status: str
    direction: str
    initiator: str
    recipient: str
    lock_amount: int
    settle_amount: int
    hash_lock: str
    timelock_expiry: int
    total_units: int
    claimed_units: int
    failed_units: int
    assigned_units: int
    unfilled_units: int
    refundable: bool
    partial: bool
    secret_revealed: bool
    lock_tx_ref: Optional[str] = None
    settle_tx_ref: Optional[str] = None
    refund_tx_ref: Optional[str] = None
    error_message: Optional[str] = None
    slots: list[SlotView] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "swap_id": self.swap_id,
            "status": self.status,
            "direction": self.direction,
            "initiator": self.initiator,
            "recipient": self.recipient,
            "lock_amount": str(self.lock_amount),
            "settle_amount": str(self.settle_amount),
            "hash_lock": self.hash_lock,
            "timelock_expiry": self.timelock_expiry,
            "total_units": self.total_units,
            "claimed_units": self.claimed_units,
            "failed_units": self.failed_units,
            "assigned_units": self.assigned_units,
            "unfilled_units": self.unfilled_units,
            "refundable": self.refundable,
            "partial": self.partial,
            "secret_revealed": self.secret_revealed,
            "lock_tx_ref": self.lock_tx_ref,
            "settle_tx_ref": self.settle_tx_ref,
            "refund_tx_ref": self.refund_tx_ref,
            "error_message": self.error_message,
            "slots": [s.to_dict() for s in self.slots],
        }


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise InvalidAmount(f"{name} must be a positive integer, got {value!r}")
    return value


def escrow_amount(price: Decimal, units: int, total_units: int) -> int:
    """Counter-value a resolver owes for ``units`` slots bought at ``price``.

    ``price`` quotes the whole swap, so a bid for k of N slots pays k/N of it,
    rounded down to whole minor units.
    """
    amount = Decimal(price) * units / total_units
    return int(amount.to_integral_value(rounding=ROUND_DOWN))


class SwapCoordinator:
    """Runs swaps end to end."""

    def __init__(
        self,
        router: ChainRouter,
        resolvers: ResolverDirectory,
        schedule: DecaySchedule = DEFAULT_SCHEDULE,
        policy: RetryPolicy = RetryPolicy(),
        db: SessionScope = get_db,
        clock: Callable[[], float] = time.time,
        slots_per_swap: int = 10,
        default_timelock: int = 1800,
        auction_duration: float = 300.0,
        simulate_resolvers: bool = False,
        resolver_poll_interval: float = 3.0,
        resolver_seed: Optional[int] = None,
        auto_refund: bool = False,
        max_concurrent_claims: int = 4,
    ):
        """Initialize the coordinator.

        Args:
            router: Lock/settlement chain clients
            resolvers: Known resolver profiles
            schedule: Auction price decay parameters
            policy: Retry policy for chain calls
            db: Session scope for the registry
            clock: Time source (unix seconds)
            slots_per_swap: N, fill slots per swap
            default_timelock: Timelock in seconds when the initiator gives none
            auction_duration: Default auction window in seconds
            simulate_resolvers: Run in-process resolver agents for each auction
            resolver_poll_interval: Agent polling interval in seconds
            resolver_seed: Seed for stochastic strategies (reproducible runs)
            auto_refund: Refund expired swaps from the sweeper
            max_concurrent_claims: Relay claims in flight at once
        """
        self.router = router
        self.resolvers = resolvers
        self.policy = policy
        self.db = db
        self.clock = clock
        self.slots_per_swap = slots_per_swap
        self.default_timelock = default_timelock
        self.auction_duration = auction_duration
        self.auto_refund = auto_refund

        self.engine = DutchAuctionEngine(
            resolvers, schedule=schedule, clock=clock, on_bid=self._persist_bid
        )
        self.relay = CrossChainRelay(
            router,
            resolvers,
            policy=policy,
            db=db,
            clock=clock,
            max_concurrent_claims=max_concurrent_claims,
            on_terminal=self._on_terminal,
        )
        self.pool: Optional[ResolverPool] = None
        if simulate_resolvers:
            self.pool = ResolverPool(resolvers, self, resolver_poll_interval, resolver_seed)

        self._swap_locks = KeyedLock("swap")
        self._escrow_locks = KeyedLock("escrow", timeout=None)
        self._close_timers: dict[str, asyncio.Task] = {}

    def _state(self, repo: SwapRepository) -> SwapStateMachine:
        return SwapStateMachine(repo, self.clock)

    def _check_not_expired(self, swap: SwapRecord) -> None:
        if swap.is_expired(self.clock()):
            raise Expired(f"Swap {swap.id} expired", swap_id=swap.id)

    async def _load(self, swap_id: str) -> SwapRecord:
        async with self.db() as session:
            return await SwapRepository(session).require_swap(swap_id)

    # ======================
    # Registration and lock
    # ======================

    async def start_swap(
        self,
        direction: Union[SwapDirection, str],
        initiator: str,
        recipient: str,
        lock_amount: int,
        settle_amount: int,
        timelock_seconds: Optional[int] = None,
        hash_lock: Optional[str] = None,
    ) -> StartedSwap:
        """Register a new swap.

        Args:
            direction: A_TO_B or B_TO_A
            initiator: Initiator address on the lock chain
            recipient: Recipient address on the settlement chain
            lock_amount: Minor units locked by the initiator
            settle_amount: Minor units the recipient expects at the initial price
            timelock_seconds: Seconds until the swap becomes refundable
            hash_lock: sha256 of the secret, when the initiator keeps the secret

        Returns:
            StartedSwap; includes the secret when it was generated here

        Raises:
            InvalidAmount: For non-positive amounts
            InvalidRequestError: For a bad direction, address, timelock or hash lock
        """
        try:
            direction = SwapDirection(direction)
        except ValueError:
            raise InvalidRequestError(f"Unknown swap direction {direction!r}")
        if not initiator or not recipient:
            raise InvalidRequestError("Initiator and recipient addresses are required")
        _positive_int(lock_amount, "lock_amount")
        _positive_int(settle_amount, "settle_amount")

        if timelock_seconds is None:
            timelock_seconds = self.default_timelock
        if timelock_seconds <= 0:
            raise InvalidRequestError(f"Timelock must be positive, got {timelock_seconds}")

        secret_hex = None
        if hash_lock is None:
            secret = generate_secret()
            secret_hex = secret.hex()
            hash_lock = hash_secret(secret)
        else:
            try:
                hash_lock = normalize_hash_lock(hash_lock)
            except ValueError as e:
                raise InvalidRequestError(str(e))

        swap_id = secrets.token_hex(32)
        expiry = int(self.clock()) + int(timelock_seconds)

        async with self.db() as session:
            await SwapRepository(session).create_swap(
                swap_id=swap_id,
                direction=direction,
                initiator=initiator,
                recipient=recipient,
                lock_amount=lock_amount,
                settle_amount=settle_amount,
                hash_lock=hash_lock,
                timelock_expiry=expiry,
                total_units=self.slots_per_swap,
            )

        logger.info(
            f"Swap {swap_id} registered: {direction.value} {lock_amount} -> "
            f"{settle_amount}, {self.slots_per_swap} slots, expires {expiry}"
        )
        return StartedSwap(
            swap_id=swap_id,
            hash_lock=hash_lock,
            timelock_expiry=expiry,
            total_units=self.slots_per_swap,
            secret=secret_hex,
        )

    async def lock_funds(self, swap_id: str) -> SwapStatusView:
        """Lock the initiator's funds in the lock-chain HTLC.

        Raises:
            Expired: If the timelock passed
            StateConflict: If the swap is already locked
            TransientChainError: If the chain stayed unavailable
        """
        async with self._swap_locks.hold(swap_id, operation="lock_funds"):
            swap = await self._load(swap_id)
            self._check_not_expired(swap)
            if swap.status != SwapStatus.PENDING:
                raise StateConflict(
                    f"Swap {swap_id} is already {swap.status.value}",
                    swap_id=swap_id,
                    expected=SwapStatus.PENDING.value,
                    actual=swap.status.value,
                )

            chain = self.router.lock_chain(swap.direction)
            lock_ref = await call_with_retry(
                f"lock_funds({swap_id})",
                lambda: chain.lock_funds(
                    swap_id,
                    swap.recipient,
                    swap.hash_lock,
                    swap.timelock_expiry,
                    swap.lock_amount,
                    slots=swap.total_units,
                ),
                self.policy,
                before_attempt=lambda: self._check_not_expired(swap),
            )
            await self._confirm_lock(swap_id, lock_ref, chain.name)

        return await self.get_swap_status(swap_id)

    async def confirm_lock(self, swap_id: str, lock_ref: Optional[str]) -> SwapStatusView:
        """Record a lock observed on the lock chain. Replays are no-ops.

        Raises:
            Expired: If the timelock passed before the lock
            StateConflict: If the swap was locked under another reference
        """
        async with self._swap_locks.hold(swap_id, operation="confirm_lock"):
            swap = await self._load(swap_id)
            chain = self.router.lock_chain(swap.direction)
            await self._confirm_lock(swap_id, lock_ref, chain.name)
        return await self.get_swap_status(swap_id)

    async def _confirm_lock(self, swap_id: str, lock_ref: Optional[str], chain: str) -> None:
        async with self.db() as session:
            repo = SwapRepository(session)
            before = await repo.require_swap(swap_id)
            was_pending = before.status == SwapStatus.PENDING
            await self._state(repo).confirm_lock(swap_id, lock_ref)
            if was_pending:
                await repo.add_transaction(swap_id, chain, "lock", lock_ref)

    # ======================
    # Auction
    # ======================

    async def start_auction(
        self,
        swap_id: str,
        initial_price: Optional[Number] = None,
        duration: Optional[float] = None,
    ) -> AuctionStatus:
        """Open the Dutch auction for a locked swap.

        Args:
            swap_id: Swap to auction
            initial_price: Starting price for the whole swap (default: settle amount)
            duration: Auction window in seconds (default: configured duration)

        Raises:
            Expired: If the timelock passed
            AlreadyActive: If the auction is running
            StateConflict: If the swap is not locked or its auction already ran
        """
        async with self._swap_locks.hold(swap_id, operation="start_auction"):
            swap = await self._load(swap_id)
            self._check_not_expired(swap)

            existing = self.engine.get(swap_id)
            if existing is not None:
                if existing.active:
                    raise AlreadyActive(f"Auction for {swap_id} already running", swap_id=swap_id)
                raise StateConflict(f"Auction for {swap_id} already ran", swap_id=swap_id)
            if swap.status != SwapStatus.LOCKED_ON_A:
                raise StateConflict(
                    f"Swap {swap_id} must be locked before its auction",
                    swap_id=swap_id,
                    expected=SwapStatus.LOCKED_ON_A.value,
                    actual=swap.status.value,
                )

            price = to_decimal(initial_price) if initial_price is not None else Decimal(
                swap.settle_amount
            )
            window = duration or self.auction_duration
            await self.engine.start_auction(
                swap_id, swap.total_units, price, window, expires_at=swap.timelock_expiry
            )
            self._close_timers[swap_id] = spawn(
                self._close_after(swap_id, window), name=f"auction-close-{swap_id}"
            )
            if self.pool is not None:
                self.pool.start(swap_id)

        return self.engine.status(swap_id)

    async def _close_after(self, swap_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.close_auction(swap_id)
        except (NoActiveAuction, StateConflict):
            pass
        except SwapError as e:
            logger.error(f"Closing auction for {swap_id} failed: {e.message}")

    def _cancel_timer(self, swap_id: str) -> None:
        task = self._close_timers.pop(swap_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def get_auction_status(self, swap_id: str) -> AuctionStatus:
        """Snapshot of a swap's auction.

        Raises:
            NoActiveAuction: If the swap has no auction in this process
        """
        return self.engine.status(swap_id)

    async def submit_bid(
        self,
        swap_id: str,
        resolver_id: str,
        percent: Optional[Number] = None,
        units: Optional[int] = None,
        limit_price: Optional[Number] = None,
    ) -> Bid:
        """Submit a resolver's fill, given either as a percentage or in units.

        The auction closes as soon as every slot is taken.

        Raises:
            InvalidRequestError: Unless exactly one of percent/units is given
            BelowMinimumGranularity: Percent not a multiple of 100/N
            Expired, NoActiveAuction, InvalidResolver, OutOfRange,
            InsufficientRemaining, LimitPriceExceeded: See DutchAuctionEngine.submit_bid
        """
        if (percent is None) == (units is None):
            raise InvalidRequestError(
                "Give exactly one of percent or units", swap_id=swap_id
            )
        if self.engine.get(swap_id) is None:
            swap = await self._load(swap_id)
            self._check_not_expired(swap)
        state = self.engine.ensure_open(swap_id)
        if percent is not None:
            units = units_for_percent(percent, state.total_units)

        bid = await self.engine.submit_bid(swap_id, resolver_id, units, limit_price)
        if state.remaining_units == 0:
            try:
                await self.close_auction(swap_id)
            except NoActiveAuction:
                pass
        return bid

    async def _persist_bid(self, swap_id: str, bid: Bid) -> None:
        async with self.db() as session:
            await SwapRepository(session).record_bid(
                swap_id=swap_id,
                resolver_id=bid.resolver_id,
                price=bid.price,
                units=bid.units,
                percent_filled=bid.percent_filled,
                slot_indices=list(bid.slot_indices),
                sequence=bid.sequence,
                accepted_at=bid.timestamp,
            )

    async def close_auction(self, swap_id: str) -> AuctionResult:
        """Close the auction.

        With at least one fill the swap moves to settled_on_b and the relay
        starts watching the resolvers' escrows. Without fills the swap stays
        locked and becomes refundable at its timelock.

        Raises:
            NoActiveAuction: If the auction is missing or already closed
        """
        async with self._swap_locks.hold(swap_id, operation="close_auction"):
            result = await self.engine.end_auction(swap_id)
            self._cancel_timer(swap_id)
            if self.pool is not None:
                await self.pool.stop(swap_id, wait=False)

            if result.total_filled == 0:
                logger.warning(f"Auction for {swap_id} closed without fills; awaiting refund")
                return result

            try:
                async with self.db() as session:
                    await self._state(SwapRepository(session)).mark_settled_on_b(swap_id)
            except StateConflict as e:
                logger.warning(f"Auction for {swap_id} closed but swap not settled: {e.message}")
                return result
            await self.relay.watch(swap_id)

        return result

    async def resolver_stats(self, swap_id: str) -> dict[str, dict]:
        """Per-resolver fill statistics.

        Served from the live auction, or rebuilt from persisted bids once the
        auction state is gone.
        """
        if self.engine.get(swap_id) is not None:
            return self.engine.resolver_stats(swap_id)

        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            bids = await repo.get_bids(swap_id)

        stats = {}
        for profile in self.resolvers:
            own = [b for b in bids if b.resolver_id == profile.id]
            units = sum(b.units for b in own)
            average = sum((b.price for b in own), Decimal(0)) / len(own) if own else Decimal(0)
            stats[profile.id] = {
                "name": profile.name,
                "bid_count": len(own),
                "units_filled": units,
                "average_price": str(average),
                "percentage": str(percent_for_units(units, swap.total_units)),
            }
        return stats

    # ======================
    # Resolver escrows
    # ======================

    async def lock_resolver_escrow(self, swap_id: str, resolver_id: str) -> Optional[dict]:
        """Lock a resolver's outstanding counter-value on the settlement chain.

        The amount is what the resolver's accepted bids owe minus what it
        already escrowed for this swap.

        Returns:
            The recorded escrow, or None if nothing is owed

        Raises:
            InvalidResolver: Unknown resolver
            Expired: If the timelock passed
            StateConflict: If the swap no longer takes escrows
        """
        profile = self.resolvers.get(resolver_id)
        if profile is None:
            raise InvalidResolver(f"Unknown resolver {resolver_id}", swap_id=swap_id)

        async with self._escrow_locks.hold((swap_id, resolver_id), operation="lock_escrow"):
            async with self.db() as session:
                repo = SwapRepository(session)
                swap = await repo.require_swap(swap_id)
                bids = [b for b in await repo.get_bids(swap_id) if b.resolver_id == resolver_id]
                escrows = [e for e in await repo.get_escrows(swap_id) if e.resolver_id == resolver_id]

            self._check_escrow_allowed(swap)
            owed = sum(escrow_amount(b.price, b.units, swap.total_units) for b in bids)
            amount = owed - sum(e.amount for e in escrows)
            if amount <= 0:
                return None

            chain = self.router.settlement_chain(swap.direction)
            receipt = await call_with_retry(
                f"lock_escrow({swap_id}, {resolver_id})",
                lambda: chain.lock_escrow(
                    swap.recipient,
                    swap.hash_lock,
                    swap.timelock_expiry,
                    amount,
                    sender=profile.address_on(chain.name),
                    signer=profile.signer_for(chain.name),
                ),
                self.policy,
                before_attempt=lambda: self._check_not_expired(swap),
            )
            async with self._swap_locks.hold(swap_id, operation="record_escrow"):
                return await self._record_escrow(
                    swap_id, resolver_id, receipt.ref, receipt.address, amount
                )

    async def record_escrow(
        self,
        swap_id: str,
        resolver_id: str,
        escrow_ref: str,
        escrow_address: str,
        amount: int,
    ) -> dict:
        """Record an escrow a resolver locked on its own.

        Raises:
            InvalidResolver: Unknown resolver, or one without assigned slots
            InvalidAmount: Non-positive amount
            Expired: If the timelock passed
            StateConflict: Swap no longer takes escrows, or duplicate reference
        """
        if self.resolvers.get(resolver_id) is None:
            raise InvalidResolver(f"Unknown resolver {resolver_id}", swap_id=swap_id)
        _positive_int(amount, "amount")

        async with self._escrow_locks.hold((swap_id, resolver_id), operation="record_escrow"):
            async with self._swap_locks.hold(swap_id, operation="record_escrow"):
                return await self._record_escrow(
                    swap_id, resolver_id, escrow_ref, escrow_address, amount
                )

    def _check_escrow_allowed(self, swap: SwapRecord) -> None:
        self._check_not_expired(swap)
        if swap.status not in ESCROW_STATUSES:
            raise StateConflict(
                f"Swap {swap.id} is {swap.status.value}, escrows closed",
                swap_id=swap.id,
                actual=swap.status.value,
            )

    async def _record_escrow(
        self,
        swap_id: str,
        resolver_id: str,
        escrow_ref: str,
        escrow_address: str,
        amount: int,
    ) -> dict:
        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            self._check_escrow_allowed(swap)
            if not any(s.owner_resolver_id == resolver_id for s in await repo.get_slots(swap_id)):
                raise InvalidResolver(
                    f"Resolver {resolver_id} holds no slots of {swap_id}", swap_id=swap_id
                )
            if await repo.get_escrow_by_ref(escrow_ref) is not None:
                raise StateConflict(f"Escrow {escrow_ref} already recorded", swap_id=swap_id)

            escrow = await repo.add_escrow(swap_id, resolver_id, escrow_ref, escrow_address, amount)
            chain = self.router.settlement_chain(swap.direction)
            await repo.add_transaction(swap_id, chain.name, "escrow_lock", escrow_ref)
            await self._state(repo).mark_escrow_locked(swap_id, escrow_ref)
            result = {
                "swap_id": swap_id,
                "resolver_id": resolver_id,
                "escrow_ref": escrow.escrow_ref,
                "escrow_address": escrow.escrow_address,
                "amount": str(escrow.amount),
                "status": escrow.status.value,
            }

        self.relay.attach_escrow(swap_id, escrow_address)
        logger.info(f"Escrow {escrow_ref} of {resolver_id} recorded for {swap_id}: {amount}")
        return result

    # ======================
    # Settlement and claims
    # ======================

    async def claim_settlement(self, swap_id: str, secret: str) -> dict:
        """Claim every resolver escrow for the recipient with the secret.

        Claiming publishes the preimage on the settlement chain, which is
        what the relay watches for.

        Raises:
            InvalidRequestError: Malformed secret
            InvalidPreimage: Secret does not match the hash lock
            Expired: If the timelock passed
            StateConflict: If the auction has not settled
        """
        try:
            preimage = parse_secret(secret)
        except ValueError as e:
            raise InvalidRequestError(str(e), swap_id=swap_id)

        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            escrows = await repo.get_escrows(swap_id, EscrowStatus.LOCKED)

        self._check_not_expired(swap)
        if not verify_preimage(preimage, swap.hash_lock):
            raise InvalidPreimage(f"Secret does not match hash lock of {swap_id}", swap_id=swap_id)
        if swap.status not in (SwapStatus.SETTLED_ON_B, SwapStatus.SETTLED_ON_A):
            raise StateConflict(
                f"Swap {swap_id} is {swap.status.value}, nothing to settle",
                swap_id=swap_id,
                expected=SwapStatus.SETTLED_ON_B.value,
                actual=swap.status.value,
            )

        # A live watch observes the reveal itself once the escrows are claimed
        watching = bool(escrows) and self.relay.is_watching(swap_id)
        chain = self.router.settlement_chain(swap.direction)
        claimed = []
        for escrow in escrows:
            try:
                claim_ref = await call_with_retry(
                    f"claim_escrow({escrow.escrow_ref})",
                    lambda ref=escrow.escrow_ref: chain.claim_escrow(ref, preimage),
                    self.policy,
                    before_attempt=lambda: self._check_not_expired(swap),
                )
            except AlreadyClaimed:
                claim_ref = None
            async with self.db() as session:
                repo = SwapRepository(session)
                if await repo.mark_escrow_claimed(escrow.escrow_ref, claim_ref):
                    await repo.add_transaction(swap_id, chain.name, "escrow_claim", claim_ref)
            claimed.append({"escrow_ref": escrow.escrow_ref, "claim_ref": claim_ref})

        if swap.status == SwapStatus.SETTLED_ON_B and not watching:
            await self.relay.on_secret(swap_id, preimage)

        logger.info(f"Recipient claimed {len(claimed)} escrows of {swap_id}")
        return {"swap_id": swap_id, "claimed": claimed}

    async def claim_slot(self, swap_id: str, slot_index: int, secret: str) -> SlotStatus:
        """Claim one slot with a known secret.

        Raises:
            InvalidRequestError: Malformed secret
            InvalidPreimage, Expired, StateConflict: See CrossChainRelay.claim_slot
        """
        try:
            preimage = parse_secret(secret)
        except ValueError as e:
            raise InvalidRequestError(str(e), swap_id=swap_id)

        async with self._swap_locks.hold(swap_id, operation="claim_slot"):
            swap = await self._load(swap_id)
            self._check_not_expired(swap)
            if swap.status not in SETTLED_STATUSES:
                raise StateConflict(
                    f"Swap {swap_id} is {swap.status.value}, slots are not claimable",
                    swap_id=swap_id,
                    expected=SwapStatus.SETTLED_ON_B.value,
                    actual=swap.status.value,
                )
            if swap.status == SwapStatus.SETTLED_ON_B and verify_preimage(
                preimage, swap.hash_lock
            ):
                async with self.db() as session:
                    await self._state(SwapRepository(session)).reveal_secret(
                        swap_id, preimage.hex()
                    )

        status = await self.relay.claim_slot(swap_id, slot_index, preimage)
        await self.relay.complete_if_done(swap_id)
        return status

    # ======================
    # Refund and status
    # ======================

    async def refund(self, swap_id: str) -> SwapStatusView:
        """Refund the initiator after the timelock. Succeeds at most once.

        Raises:
            RefundNotAllowed: Before expiry, unlocked, or already terminal
        """
        async with self._swap_locks.hold(swap_id, operation="refund"):
            swap = await self._load(swap_id)
            if not swap.is_expired(self.clock()):
                raise RefundNotAllowed(f"Swap {swap_id} timelock has not expired", swap_id=swap_id)
            if swap.status not in LOCKED_STATUSES:
                raise RefundNotAllowed(
                    f"Swap {swap_id} is {swap.status.value}, nothing to refund",
                    swap_id=swap_id,
                    actual=swap.status.value,
                )

            await self._stop_activity(swap_id)
            chain = self.router.lock_chain(swap.direction)
            refund_ref = await call_with_retry(
                f"refund({swap_id})", lambda: chain.refund(swap_id), self.policy
            )
            async with self.db() as session:
                repo = SwapRepository(session)
                await self._state(repo).refund(swap_id, refund_ref)
                await repo.add_transaction(swap_id, chain.name, "refund", refund_ref)

        logger.info(f"Swap {swap_id} refunded: {refund_ref}")
        return await self.get_swap_status(swap_id)

    async def get_swap_status(self, swap_id: str) -> SwapStatusView:
        """Current state of a swap and its slots.

        Raises:
            SwapNotFound: Unknown swap
        """
        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            slots = await repo.get_slots(swap_id)
        return self._view(swap, slots)

    async def swap_history(self, address: str, limit: int = 50) -> list[SwapStatusView]:
        """Swaps initiated by or paying out to an address, newest first."""
        async with self.db() as session:
            swaps = await SwapRepository(session).list_by_address(address, limit=limit)
            return [self._view(swap, list(swap.slots), with_slots=False) for swap in swaps]

    def list_resolvers(self) -> list[dict]:
        return [
            {
                "id": p.id,
                "name": p.name,
                "min_fill_percent": p.min_fill_percent,
                "max_fill_percent": p.max_fill_percent,
                "strategy": p.strategy,
                "addresses": dict(p.addresses),
            }
            for p in self.resolvers
        ]

    def _view(self, swap: SwapRecord, slots, with_slots: bool = True) -> SwapStatusView:
        def count(status: SlotStatus) -> int:
            return sum(1 for s in slots if s.status == status)

        claimed = count(SlotStatus.CLAIMED)
        return SwapStatusView(
            swap_id=swap.id,
            status=swap.status.value,
            direction=swap.direction.value,
            initiator=swap.initiator,
            recipient=swap.recipient,
            lock_amount=swap.lock_amount,
            settle_amount=swap.settle_amount,
            hash_lock=swap.hash_lock,
            timelock_expiry=swap.timelock_expiry,
            total_units=swap.total_units,
            claimed_units=claimed,
            failed_units=count(SlotStatus.FAILED),
            assigned_units=count(SlotStatus.ASSIGNED),
            unfilled_units=count(SlotStatus.AVAILABLE),
            refundable=swap.status in LOCKED_STATUSES and swap.is_expired(self.clock()),
            partial=0 < claimed < swap.total_units,
            secret_revealed=swap.secret is not None,
            lock_tx_ref=swap.lock_tx_ref,
            settle_tx_ref=swap.settle_tx_ref,
            refund_tx_ref=swap.refund_tx_ref,
            error_message=swap.error_message,
            slots=[
                SlotView(
                    index=s.index,
                    status=s.status.value,
                    owner_resolver_id=s.owner_resolver_id,
                    claim_ref=s.claim_ref,
                    attempts=s.attempts or 0,
                    last_error=s.last_error,
                )
                for s in slots
            ]
            if with_slots
            else [],
        )

    # ======================
    # Lifecycle
    # ======================

    async def _stop_activity(self, swap_id: str) -> None:
        """Stop auction, agents and relay for a swap. Safe under the swap lock."""
        self._cancel_timer(swap_id)
        await self.engine.cancel(swap_id)
        self.engine.forget(swap_id)
        if self.pool is not None:
            await self.pool.stop(swap_id, wait=False)
        await self.relay.unwatch(swap_id)

    async def pending_swaps(self) -> list[str]:
        """IDs of swaps not yet completed, refunded or failed, oldest first."""
        async with self.db() as session:
            return [s.id for s in await SwapRepository(session).list_pending()]

    def _has_activity(self, swap_id: str) -> bool:
        return (
            swap_id in self._close_timers
            or self.engine.get(swap_id) is not None
            or self.relay.is_watching(swap_id)
            or (self.pool is not None and self.pool.running(swap_id))
        )

    async def _on_terminal(self, swap_id: str) -> None:
        await self._stop_activity(swap_id)
        for resolver_id in self.resolvers.ids():
            self._escrow_locks.discard((swap_id, resolver_id))
        self._swap_locks.discard(swap_id)
        logger.info(f"Swap {swap_id} reached a terminal state")

    async def resume(self) -> int:
        """Pick up in-flight swaps after a restart.

        Auction state lives in memory and does not survive a restart. Swaps
        whose auction had accepted bids are settled with the slots already
        assigned; swaps without bids stay locked and can be re-auctioned or
        refunded. Settled swaps get their relay watch back.

        Returns:
            Number of swaps the relay is following again
        """
        now = self.clock()
        async with self.db() as session:
            repo = SwapRepository(session)
            interrupted = []
            for swap in await repo.list_by_status(
                (SwapStatus.LOCKED_ON_A, SwapStatus.LOCKED_ON_B)
            ):
                # Expired swaps keep their locked status so they stay refundable
                if swap.is_expired(now):
                    continue
                if await repo.get_slots(swap.id, SlotStatus.ASSIGNED):
                    interrupted.append(swap.id)

        for swap_id in interrupted:
            async with self.db() as session:
                await self._state(SwapRepository(session)).mark_settled_on_b(swap_id)
            logger.info(f"Swap {swap_id}: interrupted auction settled with its assigned slots")

        async with self.db() as session:
            settled = await SwapRepository(session).list_by_status(SETTLED_STATUSES)

        resumed = 0
        for swap in settled:
            if swap.is_expired(now):
                continue
            await self.relay.watch(swap.id)
            resumed += 1

        logger.info(f"Resumed {resumed} in-flight swaps ({len(interrupted)} interrupted auctions)")
        return resumed

    async def expire_due(self) -> list[str]:
        """Sweep swaps past their timelock.

        Cancels their auctions, agents and relay watches and, with
        ``auto_refund``, refunds the locked ones.

        Returns:
            IDs of the expired swaps handled
        """
        async with self.db() as session:
            expired = await SwapRepository(session).list_expired(self.clock())

        handled = []
        for swap in expired:
            refundable = self.auto_refund and swap.status in LOCKED_STATUSES
            if not refundable and not self._has_activity(swap.id):
                continue
            await self._stop_activity(swap.id)
            if refundable:
                try:
                    await self.refund(swap.id)
                except SwapError as e:
                    logger.error(f"Auto refund of {swap.id} failed: {e.message}")
            handled.append(swap.id)

        if handled:
            logger.info(f"Expired {len(handled)} swaps")
        return handled

    async def shutdown(self) -> None:
        """Stop timers, agents, relay and chain clients."""
        for swap_id in list(self._close_timers):
            self._cancel_timer(swap_id)
        if self.pool is not None:
            await self.pool.shutdown()
        await self.relay.shutdown()
        await self.router.close()
        logger.info("Swap coordinator stopped")


def build_coordinator(
    settings: Optional[Settings] = None,
    router: Optional[ChainRouter] = None,
    db: Optional[SessionScope] = None,
    clock: Callable[[], float] = time.time,
) -> SwapCoordinator:
    """Build a coordinator from application settings."""
    settings = settings or get_settings()
    return SwapCoordinator(
        router=router or create_router(settings),
        resolvers=ResolverDirectory.from_settings(settings),
        schedule=DecaySchedule.from_settings(settings),
        policy=RetryPolicy.from_settings(settings),
        db=db or get_db,
        clock=clock,
        slots_per_swap=settings.slots_per_swap,
        default_timelock=settings.default_timelock_seconds,
        auction_duration=settings.auction_duration_seconds,
        simulate_resolvers=settings.simulate_resolvers,
        resolver_poll_interval=settings.resolver_poll_interval,
        resolver_seed=settings.resolver_seed,
        auto_refund=settings.auto_refund,
        max_concurrent_claims=settings.relay_max_concurrent_claims,
    )
