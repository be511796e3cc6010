"""Cross-chain relay.

Watches the settlement-chain escrows of a swap for a transaction whose
witness bytes hash to the swap's hash lock, then claims every assigned slot
of the lock-chain HTLC with that preimage.

One watch per swap: a feeder task per escrow pushes raw payloads into the
watch's queue, and the watch consumes them until the secret shows up, the
swap turns terminal, or the timelock passes.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_never

from fusioncross.chains.base import ChainClient, ChainRouter
from fusioncross.crypto import SECRET_SIZE, parse_secret, verify_preimage
from fusioncross.errors import (
    AlreadyClaimed,
    ChainError,
    ChainUnavailable,
    Expired,
    InvalidPreimage,
    StateConflict,
    SwapError,
    TransientChainError,
)
from fusioncross.registry.database import SessionScope, get_db
from fusioncross.registry.models import (
    SETTLED_STATUSES,
    TERMINAL_SLOT_STATUSES,
    SlotStatus,
    SwapStatus,
)
from fusioncross.registry.repository import SwapRepository
from fusioncross.resolvers.directory import ResolverDirectory
from fusioncross.swaps.state import SwapStateMachine
from fusioncross.utils.locks import KeyedLock
from fusioncross.utils.retry import RetryPolicy, call_with_retry, wait_chain_backoff
from fusioncross.utils.tasks import spawn

logger = logging.getLogger(__name__)

TerminalHook = Callable[[str], Awaitable[None]]


@dataclass
class _FeedFailure:
    escrow_address: str
    error: Exception


@dataclass
class _Watch:
    swap_id: str
    hash_lock: str
    expires_at: int
    chain: ChainClient
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    feeders: dict[str, asyncio.Task] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None


class CrossChainRelay:
    """Bridges secret revelation on the settlement chain to lock-chain claims."""

    def __init__(
        self,
        router: ChainRouter,
        resolvers: ResolverDirectory,
        policy: RetryPolicy = RetryPolicy(),
        db: SessionScope = get_db,
        clock: Callable[[], float] = time.time,
        max_concurrent_claims: int = 4,
        on_terminal: Optional[TerminalHook] = None,
    ):
        """Initialize the relay.

        Args:
            router: Lock/settlement chain lookup by swap direction
            resolvers: Profiles used to find each slot owner's sending identity
            policy: Retry/backoff policy for claims and feed resubscription
            db: Session scope for registry access
            clock: Time source (unix seconds)
            max_concurrent_claims: Claims in flight at once across all swaps
            on_terminal: Awaited with the swap id when the relay completes or
                fails a swap
        """
        self.router = router
        self.resolvers = resolvers
        self.policy = policy
        self.db = db
        self.clock = clock
        self.on_terminal = on_terminal
        self._watches: dict[str, _Watch] = {}
        self._claim_tasks: dict[str, asyncio.Task] = {}
        self._slot_locks = KeyedLock("slot", timeout=None)
        self._sender_locks = KeyedLock("sender", timeout=None)
        self._claim_slots = asyncio.Semaphore(max_concurrent_claims)

    def is_watching(self, swap_id: str) -> bool:
        watch = self._watches.get(swap_id)
        return watch is not None and watch.task is not None and not watch.task.done()

    def watched_swaps(self) -> list[str]:
        return [swap_id for swap_id in self._watches if self.is_watching(swap_id)]

    # ======================
    # Subscription
    # ======================

    async def watch(self, swap_id: str) -> None:
        """Start watching a swap's escrows for the secret.

        Swaps already in settled_on_a (secret persisted) go straight to
        claiming their remaining assigned slots. Terminal swaps are ignored.
        """
        if self.is_watching(swap_id) or swap_id in self._claim_tasks:
            return

        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            escrows = await repo.get_escrows(swap_id)

        if swap.status == SwapStatus.SETTLED_ON_A and swap.secret:
            self._spawn_claims(swap_id, parse_secret(swap.secret))
            return
        if swap.status != SwapStatus.SETTLED_ON_B:
            logger.debug(f"Not watching swap {swap_id} in status {swap.status.value}")
            return

        watch = _Watch(
            swap_id=swap_id,
            hash_lock=swap.hash_lock,
            expires_at=swap.timelock_expiry,
            chain=self.router.settlement_chain(swap.direction),
        )
        self._watches[swap_id] = watch
        for escrow in escrows:
            self._start_feeder(watch, escrow.escrow_address)
        watch.task = spawn(self._run(watch), name=f"relay-{swap_id}")
        logger.info(
            f"Relay watching swap {swap_id} on {watch.chain.name} "
            f"({len(escrows)} escrows)"
        )

    def attach_escrow(self, swap_id: str, escrow_address: str) -> bool:
        """Follow an escrow recorded after the watch started.

        Returns:
            True if a feeder was added
        """
        watch = self._watches.get(swap_id)
        if watch is None or not self.is_watching(swap_id):
            return False
        if escrow_address in watch.feeders:
            return False
        self._start_feeder(watch, escrow_address)
        return True

    async def unwatch(self, swap_id: str) -> None:
        """Stop watching a swap (refund, expiry or shutdown)."""
        watch = self._watches.pop(swap_id, None)
        if watch is not None:
            tasks = list(watch.feeders.values())
            if watch.task is not None and watch.task is not asyncio.current_task():
                tasks.append(watch.task)
            await self._cancel(tasks)
        claim_task = self._claim_tasks.pop(swap_id, None)
        if claim_task is not None and claim_task is not asyncio.current_task():
            await self._cancel([claim_task])

    async def shutdown(self) -> None:
        """Cancel every watch and claim task."""
        for swap_id in list(self._watches) + list(self._claim_tasks):
            await self.unwatch(swap_id)
        logger.info("Relay stopped")

    @staticmethod
    async def _cancel(tasks: list[asyncio.Task]) -> None:
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _start_feeder(self, watch: _Watch, escrow_address: str) -> None:
        watch.feeders[escrow_address] = spawn(
            self._feed(watch, escrow_address),
            name=f"relay-feed-{watch.swap_id}-{escrow_address}",
        )

    async def _feed(self, watch: _Watch, escrow_address: str) -> None:
        """Pump one escrow's activity into the watch queue.

        Transient stream errors resubscribe with backoff until the timelock
        passes; any other error is reported to the watch.
        """
        retrying = AsyncRetrying(
            stop=stop_never,
            wait=wait_chain_backoff(self.policy),
            retry=retry_if_exception_type(TransientChainError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if self.clock() > watch.expires_at:
                        return
                    async for payload in watch.chain.subscribe_activity(escrow_address):
                        await watch.queue.put(payload)
                    raise ChainUnavailable(f"Activity stream for {escrow_address} ended")
        except SwapError as e:
            await watch.queue.put(_FeedFailure(escrow_address, e))

    async def _run(self, watch: _Watch) -> None:
        swap_id = watch.swap_id
        try:
            while True:
                remaining = watch.expires_at - self.clock()
                if remaining <= 0:
                    logger.info(f"Relay for swap {swap_id} stopped: timelock passed")
                    return
                try:
                    item = await asyncio.wait_for(watch.queue.get(), timeout=remaining)
                except asyncio.TimeoutError:
                    continue

                if isinstance(item, _FeedFailure):
                    await self._fail(
                        swap_id, f"Activity feed for {item.escrow_address} failed: {item.error}"
                    )
                    return
                if len(item) == SECRET_SIZE and verify_preimage(item, watch.hash_lock):
                    logger.info(f"Secret for swap {swap_id} revealed on {watch.chain.name}")
                    await self.on_secret(swap_id, item)
                    return
        except SwapError as e:
            logger.warning(f"Relay for swap {swap_id} stopped: {e.message}")
        finally:
            await self._cancel(
                [t for t in watch.feeders.values() if t is not asyncio.current_task()]
            )
            if self._watches.get(swap_id) is watch:
                del self._watches[swap_id]

    # ======================
    # Claims
    # ======================

    async def on_secret(self, swap_id: str, preimage: bytes) -> None:
        """Persist the revealed secret and claim every assigned slot."""
        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            if swap.status == SwapStatus.SETTLED_ON_B:
                await SwapStateMachine(repo, self.clock).reveal_secret(swap_id, preimage.hex())
            elif swap.status != SwapStatus.SETTLED_ON_A:
                raise StateConflict(
                    f"Secret observed for swap {swap_id} in status {swap.status.value}",
                    swap_id=swap_id,
                    expected=SwapStatus.SETTLED_ON_B.value,
                    actual=swap.status.value,
                )
        await self.claim_assigned(swap_id, preimage)

    def _spawn_claims(self, swap_id: str, preimage: bytes) -> None:
        task = spawn(self.claim_assigned(swap_id, preimage), name=f"relay-claims-{swap_id}")
        self._claim_tasks[swap_id] = task
        task.add_done_callback(lambda t: self._claim_tasks.pop(swap_id, None))

    async def claim_assigned(self, swap_id: str, preimage: bytes) -> dict[int, SlotStatus]:
        """Claim all assigned slots concurrently; each slot fails on its own.

        Returns:
            Final status per slot index (slots left assigned by an error
            are reported as assigned)
        """
        async with self.db() as session:
            slots = await SwapRepository(session).get_slots(swap_id, SlotStatus.ASSIGNED)

        indices = [slot.index for slot in slots]
        results = await asyncio.gather(
            *(self.claim_slot(swap_id, index, preimage) for index in indices),
            return_exceptions=True,
        )

        outcome: dict[int, SlotStatus] = {}
        for index, result in zip(indices, results):
            if isinstance(result, SwapError):
                logger.warning(f"Slot {index} of swap {swap_id} left assigned: {result.message}")
                outcome[index] = SlotStatus.ASSIGNED
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[index] = result

        await self.complete_if_done(swap_id)
        return outcome

    async def claim_slot(self, swap_id: str, slot_index: int, preimage: bytes) -> SlotStatus:
        """Claim one slot on the lock chain.

        At most one claim per slot is in flight; a slot that already reached
        claimed or failed is returned as is.

        Returns:
            The slot's resulting status (claimed or failed)

        Raises:
            Expired: Timelock passed; checked first, the slot stays as it is
            StateConflict: Swap not settled on the settlement chain, or slot
                not assigned
            InvalidPreimage: Wrong preimage; the slot stays assigned
        """
        async with self._slot_locks.hold((swap_id, slot_index), operation="claim_slot"):
            async with self.db() as session:
                repo = SwapRepository(session)
                swap = await repo.require_swap(swap_id)
                slot = await repo.get_slot(swap_id, slot_index)

            if swap.is_expired(self.clock()):
                raise Expired(f"Swap {swap_id} expired", swap_id=swap_id)
            if slot is None:
                raise StateConflict(f"Swap {swap_id} has no slot {slot_index}", swap_id=swap_id)
            if swap.status == SwapStatus.COMPLETED and slot.status in TERMINAL_SLOT_STATUSES:
                return slot.status
            if swap.status not in SETTLED_STATUSES:
                raise StateConflict(
                    f"Swap {swap_id} is {swap.status.value}, slots are not claimable",
                    swap_id=swap_id,
                    expected=SwapStatus.SETTLED_ON_B.value,
                    actual=swap.status.value,
                )
            if slot.status in TERMINAL_SLOT_STATUSES:
                return slot.status
            if slot.status != SlotStatus.ASSIGNED:
                raise StateConflict(
                    f"Slot {slot_index} of swap {swap_id} is not assigned",
                    swap_id=swap_id,
                    expected=SlotStatus.ASSIGNED.value,
                    actual=slot.status.value,
                )
            if not verify_preimage(preimage, swap.hash_lock):
                logger.error(f"Rejected wrong preimage for slot {slot_index} of swap {swap_id}")
                raise InvalidPreimage(
                    f"Preimage does not match hash lock of {swap_id}", swap_id=swap_id
                )

            chain = self.router.lock_chain(swap.direction)
            profile = self.resolvers.get(slot.owner_resolver_id or "")
            sender = profile.address_on(chain.name) if profile else None
            signer = profile.signer_for(chain.name) if profile else None
            return await self._submit_claim(swap, chain, slot_index, preimage, sender, signer)

    async def _submit_claim(
        self, swap, chain, slot_index, preimage, sender, signer=None
    ) -> SlotStatus:
        swap_id = swap.id
        attempts = 0

        def check_expiry() -> None:
            if self.clock() > swap.timelock_expiry:
                raise Expired(f"Swap {swap_id} expired during claim", swap_id=swap_id)

        async def attempt() -> str:
            nonlocal attempts
            attempts += 1
            return await chain.claim_slot(
                swap_id, slot_index, preimage, sender=sender, signer=signer
            )

        async with self._sender_locks.hold(sender or f"{swap_id}:{slot_index}"):
            async with self._claim_slots:
                try:
                    claim_ref = await call_with_retry(
                        f"claim_slot({swap_id}, {slot_index})",
                        attempt,
                        self.policy,
                        before_attempt=check_expiry,
                    )
                except AlreadyClaimed:
                    logger.info(f"Slot {slot_index} of swap {swap_id} was already claimed")
                    claim_ref = None
                except (InvalidPreimage, Expired) as e:
                    await self._record_attempts(swap_id, slot_index, attempts, e.message)
                    raise
                except ChainError as e:
                    logger.error(
                        f"Claim of slot {slot_index} of swap {swap_id} failed after "
                        f"{attempts} attempts: {e.message}"
                    )
                    await self._finish_slot(
                        swap_id, slot_index, SlotStatus.FAILED, attempts, error=e.message
                    )
                    return SlotStatus.FAILED

        await self._finish_slot(
            swap_id, slot_index, SlotStatus.CLAIMED, attempts, claim_ref=claim_ref,
            chain=chain.name,
        )
        logger.info(f"Slot {slot_index} of swap {swap_id} claimed: {claim_ref}")
        return SlotStatus.CLAIMED

    async def _record_attempts(
        self, swap_id: str, slot_index: int, attempts: int, error: str
    ) -> None:
        async with self.db() as session:
            repo = SwapRepository(session)
            for _ in range(attempts):
                await repo.record_slot_attempt(swap_id, slot_index, error)

    async def _finish_slot(
        self,
        swap_id: str,
        slot_index: int,
        status: SlotStatus,
        attempts: int,
        claim_ref: Optional[str] = None,
        error: Optional[str] = None,
        chain: Optional[str] = None,
    ) -> None:
        async with self.db() as session:
            repo = SwapRepository(session)
            slot = await repo.update_slot_status(
                swap_id,
                slot_index,
                SlotStatus.ASSIGNED,
                status,
                claim_ref=claim_ref,
                last_error=error,
            )
            slot.attempts = (slot.attempts or 0) + attempts
            if status == SlotStatus.CLAIMED and chain is not None:
                await repo.add_transaction(
                    swap_id, chain, "slot_claim", claim_ref, slot_index=slot_index
                )

    async def complete_if_done(self, swap_id: str) -> bool:
        """Complete a settled_on_a swap once no slot is left assigned."""
        async with self.db() as session:
            repo = SwapRepository(session)
            swap = await repo.require_swap(swap_id)
            if swap.status != SwapStatus.SETTLED_ON_A:
                return False
            if await repo.get_slots(swap_id, SlotStatus.ASSIGNED):
                return False
            await SwapStateMachine(repo, self.clock).complete(swap_id)

        if self.on_terminal is not None:
            await self.on_terminal(swap_id)
        return True

    async def _fail(self, swap_id: str, reason: str) -> None:
        try:
            async with self.db() as session:
                await SwapStateMachine(SwapRepository(session), self.clock).fail(swap_id, reason)
        except StateConflict as e:
            logger.warning(f"Could not mark swap {swap_id} failed: {e.message}")
            return
        if self.on_terminal is not None:
            await self.on_terminal(swap_id)
