"""In-memory chain for dry-run mode and tests.

Enforces the HTLC rules a real contract would (hash check, timelock, one
claim per slot, one refund) and supports fault injection so retry paths can
be exercised without a network.
"""

import asyncio
import logging
import secrets
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from fusioncross.chains.base import ChainClient, EscrowReceipt
from fusioncross.crypto import verify_preimage
from fusioncross.errors import (
    AlreadyClaimed,
    ChainError,
    Expired,
    InvalidPreimage,
    RefundNotAllowed,
    StateConflict,
)

logger = logging.getLogger(__name__)


@dataclass
class SimulatedLock:
    swap_id: str
    recipient: str
    hash_lock: str
    timelock: int
    amount: int
    slots: Optional[int]
    claims: dict[int, str] = field(default_factory=dict)
    claimed_by: dict[int, Optional[str]] = field(default_factory=dict)
    signed_by: dict[int, Optional[str]] = field(default_factory=dict)
    refund_ref: Optional[str] = None


@dataclass
class SimulatedEscrow:
    ref: str
    address: str
    recipient: str
    hash_lock: str
    timelock: int
    amount: int
    sender: Optional[str]
    signer: Optional[str] = None
    claim_ref: Optional[str] = None


class SimulatedChain(ChainClient):
    """Simulated chain implementing both the lock and settlement roles.

    Usage:
        chain = SimulatedChain("ethereum")
        chain.fail_next("claim_slot", ChainTimeout("slow"), RateLimited())
        chain.calls["claim_slot"]  # attempts made so far
    """

    def __init__(
        self,
        name: str = "simulated",
        clock: Callable[[], float] = time.time,
        latency: float = 0.0,
    ):
        """Initialize the chain.

        Args:
            name: Chain name used in references and logs
            clock: Time source for timelock checks
            latency: Seconds each call takes
        """
        self._name = name
        self.clock = clock
        self.latency = latency
        self.locks: dict[str, SimulatedLock] = {}
        self.escrows: dict[str, SimulatedEscrow] = {}
        self.calls: Counter = Counter()
        self._faults: dict[str, deque] = defaultdict(deque)
        self._activity: dict[str, list[bytes]] = defaultdict(list)
        self._activity_changed = asyncio.Condition()
        self._busy_senders: set[str] = set()
        self.sender_conflicts = 0

    @property
    def name(self) -> str:
        return self._name

    # Fault injection
    def fail_next(self, operation: str, *errors: Exception) -> None:
        """Raise the given errors on the next calls of an operation, in order."""
        self._faults[operation].extend(errors)

    def pending_faults(self, operation: str) -> int:
        return len(self._faults[operation])

    async def _enter(self, operation: str) -> None:
        self.calls[operation] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        queue = self._faults.get(operation)
        if queue:
            raise queue.popleft()

    def _new_ref(self, kind: str) -> str:
        return f"{self._name}:{kind}:{secrets.token_hex(8)}"

    def _expired(self, timelock: int) -> bool:
        return self.clock() > timelock

    # Lock chain role
    async def lock_funds(
        self,
        swap_id: str,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        slots: Optional[int] = None,
    ) -> str:
        await self._enter("lock_funds")
        if swap_id in self.locks:
            raise StateConflict(f"HTLC for {swap_id} already exists", swap_id=swap_id)
        if self._expired(timelock):
            raise Expired(f"Timelock for {swap_id} already passed", swap_id=swap_id)
        if amount <= 0:
            raise ChainError(f"Cannot lock {amount}", swap_id=swap_id)

        self.locks[swap_id] = SimulatedLock(
            swap_id=swap_id,
            recipient=recipient,
            hash_lock=hash_lock.lower(),
            timelock=timelock,
            amount=amount,
            slots=slots,
        )
        ref = self._new_ref("lock")
        logger.debug(f"[{self._name}] locked {amount} for {swap_id}: {ref}")
        return ref

    async def claim_slot(
        self,
        swap_id: str,
        slot_index: int,
        preimage: bytes,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> str:
        if sender is not None:
            if sender in self._busy_senders:
                # Two transactions from one identity in flight would race on its nonce
                self.sender_conflicts += 1
                raise ChainError(f"Nonce conflict for sender {sender}", swap_id=swap_id)
            self._busy_senders.add(sender)
        try:
            await self._enter("claim_slot")
            lock = self.locks.get(swap_id)
            if lock is None:
                raise ChainError(f"No HTLC for {swap_id}", swap_id=swap_id)
            if lock.slots is not None and not 0 <= slot_index < lock.slots:
                raise ChainError(f"Slot {slot_index} out of range", swap_id=swap_id)
            if lock.refund_ref is not None or self._expired(lock.timelock):
                raise Expired(f"HTLC for {swap_id} expired", swap_id=swap_id)
            if not verify_preimage(preimage, lock.hash_lock):
                raise InvalidPreimage(
                    f"Preimage does not match hash lock of {swap_id}", swap_id=swap_id
                )
            if slot_index in lock.claims:
                raise AlreadyClaimed(
                    f"Slot {slot_index} of {swap_id} already claimed", swap_id=swap_id
                )

            ref = self._new_ref("claim")
            lock.claims[slot_index] = ref
            lock.claimed_by[slot_index] = sender
            lock.signed_by[slot_index] = signer
            return ref
        finally:
            if sender is not None:
                self._busy_senders.discard(sender)

    async def refund(self, swap_id: str) -> str:
        await self._enter("refund")
        lock = self.locks.get(swap_id)
        if lock is None:
            raise ChainError(f"No HTLC for {swap_id}", swap_id=swap_id)
        if lock.refund_ref is not None:
            raise RefundNotAllowed(f"HTLC for {swap_id} already refunded", swap_id=swap_id)
        if not self._expired(lock.timelock):
            raise RefundNotAllowed(f"Timelock for {swap_id} not reached", swap_id=swap_id)

        lock.refund_ref = self._new_ref("refund")
        return lock.refund_ref

    # Settlement chain role
    async def lock_escrow(
        self,
        recipient: str,
        hash_lock: str,
        timelock: int,
        amount: int,
        sender: Optional[str] = None,
        signer: Optional[str] = None,
    ) -> EscrowReceipt:
        await self._enter("lock_escrow")
        if self._expired(timelock):
            raise Expired("Escrow timelock already passed")

        ref = self._new_ref("escrow")
        address = f"{self._name}-escrow-{secrets.token_hex(6)}"
        self.escrows[ref] = SimulatedEscrow(
            ref=ref,
            address=address,
            recipient=recipient,
            hash_lock=hash_lock.lower(),
            timelock=timelock,
            amount=amount,
            sender=sender,
            signer=signer,
        )
        return EscrowReceipt(ref=ref, address=address)

    async def claim_escrow(self, escrow_ref: str, preimage: bytes) -> str:
        await self._enter("claim_escrow")
        escrow = self.escrows.get(escrow_ref)
        if escrow is None:
            raise ChainError(f"Unknown escrow {escrow_ref}")
        if escrow.claim_ref is not None:
            raise AlreadyClaimed(f"Escrow {escrow_ref} already claimed")
        if self._expired(escrow.timelock):
            raise Expired(f"Escrow {escrow_ref} expired")
        if not verify_preimage(preimage, escrow.hash_lock):
            raise InvalidPreimage(f"Preimage does not match escrow {escrow_ref}")

        escrow.claim_ref = self._new_ref("escrow-claim")
        # The claim transaction carries the preimage as its witness
        await self.publish_activity(escrow.address, preimage)
        return escrow.claim_ref

    async def publish_activity(self, address: str, payload: bytes) -> None:
        """Append a transaction witness to an escrow's activity feed."""
        async with self._activity_changed:
            self._activity[address].append(payload)
            self._activity_changed.notify_all()

    async def subscribe_activity(
        self, escrow_address: str, cursor: Optional[str] = None
    ) -> AsyncIterator[bytes]:
        await self._enter("subscribe_activity")
        position = int(cursor) if cursor is not None else 0
        while True:
            async with self._activity_changed:
                await self._activity_changed.wait_for(
                    lambda: len(self._activity[escrow_address]) > position
                )
                batch = self._activity[escrow_address][position:]
            for payload in batch:
                position += 1
                yield payload
