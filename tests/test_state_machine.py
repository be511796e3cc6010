"""Tests for the swap lifecycle state machine."""

import pytest

from fusioncross.errors import Expired, RefundNotAllowed, StateConflict
from fusioncross.registry.models import SwapDirection, SwapStatus
from fusioncross.swaps.state import SwapStateMachine, can_transition, sources_of

EXPIRY_DELAY = 1800


@pytest.fixture
def machine(swap_repo, clock) -> SwapStateMachine:
    return SwapStateMachine(swap_repo, clock=clock)


async def _create(repo, clock, swap_id="swap-1"):
    return await repo.create_swap(
        swap_id=swap_id,
        direction=SwapDirection.A_TO_B,
        initiator="0xinitiator",
        recipient="GRECIPIENT",
        lock_amount=1_000_000,
        settle_amount=1_000_000,
        hash_lock="cd" * 32,
        timelock_expiry=int(clock()) + EXPIRY_DELAY,
        total_units=10,
    )


class TestTransitionGraph:
    """Tests for the lifecycle graph."""

    def test_forward_path(self):
        path = [
            SwapStatus.PENDING,
            SwapStatus.LOCKED_ON_A,
            SwapStatus.LOCKED_ON_B,
            SwapStatus.SETTLED_ON_B,
            SwapStatus.SETTLED_ON_A,
            SwapStatus.COMPLETED,
        ]
        for current, new in zip(path, path[1:]):
            assert can_transition(current, new)

    def test_no_skipping_or_going_back(self):
        assert not can_transition(SwapStatus.PENDING, SwapStatus.SETTLED_ON_B)
        assert not can_transition(SwapStatus.SETTLED_ON_A, SwapStatus.LOCKED_ON_A)
        assert not can_transition(SwapStatus.PENDING, SwapStatus.REFUNDED)

    def test_terminal_states_have_no_exits(self):
        for status in (SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.FAILED):
            assert not any(can_transition(status, other) for other in SwapStatus)

    def test_sources_of_refunded(self):
        assert sources_of(SwapStatus.REFUNDED) == {
            SwapStatus.LOCKED_ON_A,
            SwapStatus.LOCKED_ON_B,
            SwapStatus.SETTLED_ON_B,
            SwapStatus.SETTLED_ON_A,
        }


class TestSwapStateMachine:
    """Tests for SwapStateMachine against the registry."""

    @pytest.mark.asyncio
    async def test_confirm_lock_is_idempotent(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)

        first = await machine.confirm_lock("swap-1", "tx-lock")
        again = await machine.confirm_lock("swap-1", "tx-lock")

        assert first.status == SwapStatus.LOCKED_ON_A
        assert again.status == SwapStatus.LOCKED_ON_A
        assert again.version == first.version

    @pytest.mark.asyncio
    async def test_confirm_lock_with_other_ref_conflicts(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")

        with pytest.raises(StateConflict):
            await machine.confirm_lock("swap-1", "tx-other")

    @pytest.mark.asyncio
    async def test_confirm_lock_after_expiry(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        clock.advance(EXPIRY_DELAY + 1)

        with pytest.raises(Expired):
            await machine.confirm_lock("swap-1", "tx-lock")

    @pytest.mark.asyncio
    async def test_escrow_lock_only_moves_once(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")

        swap = await machine.mark_escrow_locked("swap-1")
        assert swap.status == SwapStatus.LOCKED_ON_B
        swap = await machine.mark_escrow_locked("swap-1")
        assert swap.status == SwapStatus.LOCKED_ON_B

    @pytest.mark.asyncio
    async def test_first_escrow_ref_survives_settlement(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")

        await machine.mark_escrow_locked("swap-1", "esc-1")
        await machine.mark_escrow_locked("swap-1", "esc-2")
        swap = await machine.mark_settled_on_b("swap-1")

        assert swap.status == SwapStatus.SETTLED_ON_B
        assert swap.settle_tx_ref == "esc-1"

    @pytest.mark.asyncio
    async def test_escrow_after_settlement_fills_missing_ref(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")
        await machine.mark_settled_on_b("swap-1")

        swap = await machine.mark_escrow_locked("swap-1", "esc-late")

        assert swap.status == SwapStatus.SETTLED_ON_B
        assert swap.settle_tx_ref == "esc-late"

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")
        await machine.mark_settled_on_b("swap-1")
        swap = await machine.reveal_secret("swap-1", "11" * 32)

        assert swap.status == SwapStatus.SETTLED_ON_A
        assert swap.secret == "11" * 32

        swap = await machine.complete("swap-1")
        assert swap.status == SwapStatus.COMPLETED
        assert swap.is_terminal

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_swap_untouched(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)

        with pytest.raises(StateConflict):
            await machine.complete("swap-1")

        swap = await swap_repo.require_swap("swap-1")
        assert swap.status == SwapStatus.PENDING
        assert swap.version == 1

    @pytest.mark.asyncio
    async def test_refund_before_expiry(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")

        with pytest.raises(RefundNotAllowed):
            await machine.refund("swap-1")

    @pytest.mark.asyncio
    async def test_refund_after_expiry(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")
        clock.advance(EXPIRY_DELAY + 1)

        swap = await machine.refund("swap-1", "tx-refund")
        assert swap.status == SwapStatus.REFUNDED
        assert swap.refund_tx_ref == "tx-refund"

        with pytest.raises(RefundNotAllowed):
            await machine.refund("swap-1")

    @pytest.mark.asyncio
    async def test_refund_unlocked_swap(self, machine, swap_repo, clock):
        """A pending swap never locked anything."""
        await _create(swap_repo, clock)
        clock.advance(EXPIRY_DELAY + 1)

        with pytest.raises(RefundNotAllowed):
            await machine.refund("swap-1")

    @pytest.mark.asyncio
    async def test_fail_records_reason(self, machine, swap_repo, clock):
        await _create(swap_repo, clock)
        await machine.confirm_lock("swap-1", "tx-lock")

        swap = await machine.fail("swap-1", "activity feed gone")
        assert swap.status == SwapStatus.FAILED
        assert swap.error_message == "activity feed gone"
