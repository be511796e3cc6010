"""Swap lifecycle state machine.

pending -> locked_on_a -> locked_on_b -> settled_on_b -> settled_on_a -> completed

``refunded`` is reachable from any locked state once the timelock passes and
``failed`` on an unrecoverable relay error; both are terminal. Every change
is a registry compare-and-set, so an invalid transition raises StateConflict
and leaves the stored swap untouched.
"""

import logging
import time
from typing import Callable, Optional

from fusioncross.errors import Expired, RefundNotAllowed, StateConflict
from fusioncross.registry.models import LOCKED_STATUSES, SwapRecord, SwapStatus
from fusioncross.registry.repository import SwapRepository

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SwapStatus, frozenset[SwapStatus]] = {
    SwapStatus.PENDING: frozenset({SwapStatus.LOCKED_ON_A}),
    SwapStatus.LOCKED_ON_A: frozenset(
        {
            SwapStatus.LOCKED_ON_B,
            SwapStatus.SETTLED_ON_B,
            SwapStatus.REFUNDED,
            SwapStatus.FAILED,
        }
    ),
    SwapStatus.LOCKED_ON_B: frozenset(
        {SwapStatus.SETTLED_ON_B, SwapStatus.REFUNDED, SwapStatus.FAILED}
    ),
    SwapStatus.SETTLED_ON_B: frozenset(
        {SwapStatus.SETTLED_ON_A, SwapStatus.REFUNDED, SwapStatus.FAILED}
    ),
    SwapStatus.SETTLED_ON_A: frozenset(
        {SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.FAILED}
    ),
    SwapStatus.COMPLETED: frozenset(),
    SwapStatus.REFUNDED: frozenset(),
    SwapStatus.FAILED: frozenset(),
}


def can_transition(current: SwapStatus, new: SwapStatus) -> bool:
    """Check whether an edge exists in the lifecycle graph."""
    return new in TRANSITIONS.get(SwapStatus(current), frozenset())


def sources_of(new: SwapStatus) -> frozenset[SwapStatus]:
    """All states with an edge into ``new``."""
    return frozenset(s for s, targets in TRANSITIONS.items() if new in targets)


class SwapStateMachine:
    """Applies lifecycle transitions to swaps in the registry."""

    def __init__(self, repo: SwapRepository, clock: Callable[[], float] = time.time):
        self.repo = repo
        self.clock = clock

    async def transition(
        self,
        swap_id: str,
        new_status: SwapStatus,
        expected: Optional[frozenset[SwapStatus]] = None,
        **fields,
    ) -> SwapRecord:
        """Move a swap to ``new_status`` from any state with an edge into it.

        Raises:
            StateConflict: If the swap is not in a state that may move there
        """
        allowed = sources_of(new_status) if expected is None else expected
        swap = await self.repo.update_status(swap_id, allowed, new_status, **fields)
        logger.info(f"Swap {swap_id} -> {new_status.value}")
        return swap

    async def confirm_lock(self, swap_id: str, lock_ref: Optional[str]) -> SwapRecord:
        """Record that the initiator's funds are locked on the lock chain.

        Replaying a confirmation for a swap that is already locked returns the
        swap unchanged.

        Raises:
            Expired: If the timelock passed before the lock was observed
            StateConflict: If the swap was locked under a different reference
        """
        swap = await self.repo.require_swap(swap_id)
        if swap.status != SwapStatus.PENDING:
            if swap.lock_tx_ref is not None and lock_ref in (None, swap.lock_tx_ref):
                logger.debug(f"Duplicate lock confirmation for swap {swap_id} ignored")
                return swap
            raise StateConflict(
                f"Swap {swap_id} already locked with {swap.lock_tx_ref}",
                swap_id=swap_id,
                expected=SwapStatus.PENDING.value,
                actual=swap.status.value,
            )
        if swap.is_expired(self.clock()):
            raise Expired(f"Swap {swap_id} expired before lock", swap_id=swap_id)

        return await self.transition(
            swap_id,
            SwapStatus.LOCKED_ON_A,
            expected=frozenset({SwapStatus.PENDING}),
            lock_tx_ref=lock_ref,
        )

    async def mark_escrow_locked(
        self, swap_id: str, escrow_ref: Optional[str] = None
    ) -> SwapRecord:
        """Record a resolver escrow on the settlement chain.

        The first escrow moves locked_on_a to locked_on_b, and its reference
        becomes the swap's settlement reference. Later escrows only fill in a
        missing reference.
        """
        swap = await self.repo.require_swap(swap_id)
        if swap.status == SwapStatus.LOCKED_ON_A:
            fields = {"settle_tx_ref": escrow_ref} if escrow_ref else {}
            return await self.transition(
                swap_id,
                SwapStatus.LOCKED_ON_B,
                expected=frozenset({SwapStatus.LOCKED_ON_A}),
                **fields,
            )
        if escrow_ref and swap.settle_tx_ref is None:
            return await self.repo.set_fields(swap_id, settle_tx_ref=escrow_ref)
        return swap

    async def mark_settled_on_b(
        self, swap_id: str, settle_ref: Optional[str] = None
    ) -> SwapRecord:
        """Auction closed with at least one fill.

        Without ``settle_ref`` the reference recorded with the first escrow
        is kept.
        """
        fields = {"settle_tx_ref": settle_ref} if settle_ref else {}
        return await self.transition(
            swap_id,
            SwapStatus.SETTLED_ON_B,
            expected=frozenset({SwapStatus.LOCKED_ON_A, SwapStatus.LOCKED_ON_B}),
            **fields,
        )

    async def reveal_secret(self, swap_id: str, secret_hex: str) -> SwapRecord:
        """Persist the observed preimage and move to settled_on_a."""
        return await self.transition(
            swap_id,
            SwapStatus.SETTLED_ON_A,
            expected=frozenset({SwapStatus.SETTLED_ON_B}),
            secret=secret_hex,
        )

    async def complete(self, swap_id: str) -> SwapRecord:
        return await self.transition(
            swap_id, SwapStatus.COMPLETED, expected=frozenset({SwapStatus.SETTLED_ON_A})
        )

    async def refund(self, swap_id: str, refund_ref: Optional[str] = None) -> SwapRecord:
        """Refund a locked swap after its timelock.

        Raises:
            RefundNotAllowed: Before expiry, for unlocked or terminal swaps
        """
        swap = await self.repo.require_swap(swap_id)
        if not swap.is_expired(self.clock()):
            raise RefundNotAllowed(
                f"Swap {swap_id} timelock has not expired", swap_id=swap_id
            )
        if swap.status not in LOCKED_STATUSES:
            raise RefundNotAllowed(
                f"Swap {swap_id} is {swap.status.value}, nothing to refund",
                swap_id=swap_id,
                actual=swap.status.value,
            )
        try:
            return await self.transition(
                swap_id, SwapStatus.REFUNDED, expected=LOCKED_STATUSES, refund_tx_ref=refund_ref
            )
        except StateConflict as e:
            raise RefundNotAllowed(e.message, swap_id=swap_id, actual=e.actual)

    async def fail(self, swap_id: str, reason: str) -> SwapRecord:
        """Mark a swap failed after an unrecoverable relay error."""
        logger.error(f"Swap {swap_id} failed: {reason}")
        return await self.transition(
            swap_id, SwapStatus.FAILED, expected=LOCKED_STATUSES, error_message=reason
        )
