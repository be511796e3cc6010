"""Tests for the swap coordinator."""

from decimal import Decimal

import pytest

from fusioncross.crypto import hash_secret
from fusioncross.errors import (
    AlreadyActive,
    BelowMinimumGranularity,
    Expired,
    InvalidAmount,
    InvalidPreimage,
    InvalidRequestError,
    InvalidResolver,
    RefundNotAllowed,
    StateConflict,
    SwapNotFound,
)
from fusioncross.registry.repository import SwapRepository
from fusioncross.swaps.service import escrow_amount


async def _locked(coordinator, **kwargs):
    started = await coordinator.start_swap(
        "A_TO_B", "0xinitiator", "GRECIPIENT", 1_000_000, 1_000_000, **kwargs
    )
    await coordinator.lock_funds(started.swap_id)
    return started


class TestEscrowAmount:
    """Tests for escrow_amount."""

    def test_share_of_price(self):
        assert escrow_amount(Decimal("998000"), 2, 10) == 199_600
        assert escrow_amount(Decimal("995000"), 3, 10) == 298_500

    def test_rounds_down(self):
        assert escrow_amount(Decimal("10"), 1, 3) == 3


class TestStartSwap:
    """Tests for registration and the initiator lock."""

    @pytest.mark.asyncio
    async def test_generated_secret(self, coordinator, clock):
        started = await coordinator.start_swap(
            "A_TO_B", "0xinitiator", "GRECIPIENT", 1_000_000, 1_000_000
        )

        assert hash_secret(bytes.fromhex(started.secret)) == started.hash_lock
        assert started.total_units == 10
        assert started.timelock_expiry == int(clock()) + 1800

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "pending"
        assert view.unfilled_units == 10
        assert view.secret_revealed is False

    @pytest.mark.asyncio
    async def test_caller_hash_lock(self, coordinator):
        hash_lock = hash_secret(b"\x07" * 32)
        started = await coordinator.start_swap(
            "B_TO_A", "GINITIATOR", "0xrecipient", 5, 5, hash_lock="0x" + hash_lock.upper()
        )

        assert started.secret is None
        assert started.hash_lock == hash_lock

    @pytest.mark.asyncio
    async def test_invalid_requests(self, coordinator):
        with pytest.raises(InvalidAmount):
            await coordinator.start_swap("A_TO_B", "0xi", "Gr", 0, 10)
        with pytest.raises(InvalidAmount):
            await coordinator.start_swap("A_TO_B", "0xi", "Gr", 10, -1)
        with pytest.raises(InvalidRequestError):
            await coordinator.start_swap("SIDEWAYS", "0xi", "Gr", 10, 10)
        with pytest.raises(InvalidRequestError):
            await coordinator.start_swap("A_TO_B", "", "Gr", 10, 10)
        with pytest.raises(InvalidRequestError):
            await coordinator.start_swap("A_TO_B", "0xi", "Gr", 10, 10, hash_lock="abc")

    @pytest.mark.asyncio
    async def test_timelock_must_be_positive(self, coordinator):
        """Zero is rejected rather than replaced by the default timelock."""
        for timelock in (0, -5):
            with pytest.raises(InvalidRequestError):
                await coordinator.start_swap(
                    "A_TO_B", "0xi", "Gr", 10, 10, timelock_seconds=timelock
                )

    @pytest.mark.asyncio
    async def test_lock_funds(self, coordinator, chain_a):
        started = await _locked(coordinator)

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "locked_on_a"
        assert view.lock_tx_ref.startswith("ethereum:lock:")
        assert chain_a.locks[started.swap_id].slots == 10

        with pytest.raises(StateConflict):
            await coordinator.lock_funds(started.swap_id)

    @pytest.mark.asyncio
    async def test_confirm_lock_replay(self, coordinator):
        started = await coordinator.start_swap("A_TO_B", "0xi", "Gr", 10, 10)

        first = await coordinator.confirm_lock(started.swap_id, "0xabc")
        again = await coordinator.confirm_lock(started.swap_id, "0xabc")

        assert first.status == again.status == "locked_on_a"
        with pytest.raises(StateConflict):
            await coordinator.confirm_lock(started.swap_id, "0xdef")

    @pytest.mark.asyncio
    async def test_lock_after_expiry(self, coordinator, clock):
        started = await coordinator.start_swap(
            "A_TO_B", "0xi", "Gr", 10, 10, timelock_seconds=60
        )
        clock.advance(61)

        with pytest.raises(Expired):
            await coordinator.lock_funds(started.swap_id)

    @pytest.mark.asyncio
    async def test_unknown_swap(self, coordinator):
        with pytest.raises(SwapNotFound):
            await coordinator.get_swap_status("missing")
        with pytest.raises(SwapNotFound):
            await coordinator.lock_funds("missing")


class TestAuctionFlow:
    """Tests for auctions run through the coordinator."""

    @pytest.mark.asyncio
    async def test_auction_requires_lock(self, coordinator):
        started = await coordinator.start_swap("A_TO_B", "0xi", "Gr", 10, 10)

        with pytest.raises(StateConflict):
            await coordinator.start_auction(started.swap_id)

    @pytest.mark.asyncio
    async def test_auction_twice(self, coordinator):
        started = await _locked(coordinator)
        status = await coordinator.start_auction(started.swap_id)

        assert status.initial_price == Decimal(1_000_000)
        assert status.current_price == Decimal("998000.000")
        with pytest.raises(AlreadyActive):
            await coordinator.start_auction(started.swap_id)

    @pytest.mark.asyncio
    async def test_bid_size_validation(self, coordinator):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)

        with pytest.raises(InvalidRequestError):
            await coordinator.submit_bid(started.swap_id, "resolver1")
        with pytest.raises(InvalidRequestError):
            await coordinator.submit_bid(started.swap_id, "resolver1", percent=20, units=2)
        with pytest.raises(BelowMinimumGranularity):
            await coordinator.submit_bid(started.swap_id, "resolver1", percent=15)

        bid = await coordinator.submit_bid(started.swap_id, "resolver1", units=2)
        assert bid.percent_filled == Decimal("20")

    @pytest.mark.asyncio
    async def test_bids_are_persisted(self, coordinator, db):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        await coordinator.submit_bid(started.swap_id, "resolver1", percent=20)

        async with db() as session:
            bids = await SwapRepository(session).get_bids(started.swap_id)
        assert [(b.resolver_id, b.indices, b.price) for b in bids] == [
            ("resolver1", [0, 1], Decimal("998000.000"))
        ]

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.assigned_units == 2

    @pytest.mark.asyncio
    async def test_full_fill_closes_auction(self, coordinator):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)

        await coordinator.submit_bid(started.swap_id, "resolver1", percent=50)
        await coordinator.submit_bid(started.swap_id, "resolver2", percent=50)

        assert not coordinator.engine.is_active(started.swap_id)
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "settled_on_b"
        assert view.unfilled_units == 0
        assert coordinator.relay.is_watching(started.swap_id)

    @pytest.mark.asyncio
    async def test_no_fills_stays_locked(self, coordinator):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)

        result = await coordinator.close_auction(started.swap_id)

        assert result.total_filled == 0
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "locked_on_a"
        assert not coordinator.relay.is_watching(started.swap_id)

    @pytest.mark.asyncio
    async def test_resolver_stats_from_registry(self, coordinator, settle):
        """Stats survive the auction state being dropped."""
        started = await settle(coordinator)
        coordinator.engine.forget(started.swap_id)

        stats = await coordinator.resolver_stats(started.swap_id)

        assert stats["resolver1"]["units_filled"] == 2
        assert stats["resolver2"]["units_filled"] == 3
        assert Decimal(stats["resolver2"]["percentage"]) == Decimal("30")
        assert stats["resolver3"]["bid_count"] == 0


class TestEscrows:
    """Tests for resolver escrows."""

    @pytest.mark.asyncio
    async def test_escrow_amounts(self, coordinator, settle, chain_b, db):
        started = await settle(coordinator)

        async with db() as session:
            escrows = await SwapRepository(session).get_escrows(started.swap_id)
        amounts = {e.resolver_id: e.amount for e in escrows}
        assert amounts == {"resolver1": 199_600, "resolver2": 298_500}
        senders = {e.sender for e in chain_b.escrows.values()}
        assert coordinator.resolvers.get("resolver1").address_on("stellar") in senders

    @pytest.mark.asyncio
    async def test_first_escrow_is_settlement_ref(self, coordinator, settle, db):
        started = await settle(coordinator)

        async with db() as session:
            escrows = await SwapRepository(session).get_escrows(started.swap_id)
        first = next(e for e in escrows if e.resolver_id == "resolver1")
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "settled_on_b"
        assert view.settle_tx_ref == first.escrow_ref

    @pytest.mark.asyncio
    async def test_late_escrow_fills_settlement_ref(self, coordinator, settle):
        """An escrow recorded after the auction closed still sets the reference."""
        started = await settle(coordinator, bids=(("resolver1", 20),), escrows=False)
        assert (await coordinator.get_swap_status(started.swap_id)).settle_tx_ref is None

        result = await coordinator.lock_resolver_escrow(started.swap_id, "resolver1")

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.settle_tx_ref == result["escrow_ref"]

    @pytest.mark.asyncio
    async def test_escrow_only_for_outstanding_amount(self, coordinator):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        await coordinator.submit_bid(started.swap_id, "resolver1", percent=20)

        first = await coordinator.lock_resolver_escrow(started.swap_id, "resolver1")
        again = await coordinator.lock_resolver_escrow(started.swap_id, "resolver1")

        assert first["amount"] == "199600"
        assert again is None
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "locked_on_b"

    @pytest.mark.asyncio
    async def test_record_external_escrow(self, coordinator):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        await coordinator.submit_bid(started.swap_id, "resolver3", percent=10)

        recorded = await coordinator.record_escrow(
            started.swap_id, "resolver3", "tx-escrow", "GESCROW", 99_800
        )
        assert recorded["status"] == "locked"

        with pytest.raises(StateConflict):
            await coordinator.record_escrow(
                started.swap_id, "resolver3", "tx-escrow", "GESCROW", 99_800
            )
        with pytest.raises(InvalidResolver):
            await coordinator.record_escrow(
                started.swap_id, "resolver1", "tx-other", "GESCROW", 10
            )
        with pytest.raises(InvalidResolver):
            await coordinator.record_escrow(started.swap_id, "mallory", "tx-x", "G", 10)
        with pytest.raises(InvalidAmount):
            await coordinator.record_escrow(started.swap_id, "resolver3", "tx-y", "G", 0)


class TestSettlement:
    """Tests for the recipient's claim and the end of the swap."""

    @pytest.mark.asyncio
    async def test_wrong_secret(self, coordinator, settle):
        started = await settle(coordinator)

        with pytest.raises(InvalidPreimage):
            await coordinator.claim_settlement(started.swap_id, "11" * 32)
        with pytest.raises(InvalidRequestError):
            await coordinator.claim_settlement(started.swap_id, "not hex")

    @pytest.mark.asyncio
    async def test_claim_before_settlement(self, coordinator):
        started = await _locked(coordinator)

        with pytest.raises(StateConflict):
            await coordinator.claim_settlement(started.swap_id, started.secret)

    @pytest.mark.asyncio
    async def test_claim_settlement_marks_escrows(self, coordinator, settle, db, eventually):
        started = await settle(coordinator)

        result = await coordinator.claim_settlement(started.swap_id, started.secret)

        assert len(result["claimed"]) == 2
        async with db() as session:
            escrows = await SwapRepository(session).get_escrows(started.swap_id)
        assert {e.status.value for e in escrows} == {"claimed"}

        async def completed():
            return (await coordinator.get_swap_status(started.swap_id)).status == "completed"

        await eventually(completed)

    @pytest.mark.asyncio
    async def test_settled_without_escrows(self, coordinator, settle, eventually):
        """With nothing to watch, the recipient's claim reveals the secret directly."""
        started = await settle(coordinator, escrows=False)

        result = await coordinator.claim_settlement(started.swap_id, started.secret)

        assert result["claimed"] == []
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "completed"
        assert view.claimed_units == 5

    @pytest.mark.asyncio
    async def test_manual_slot_claim(self, coordinator, settle):
        started = await settle(coordinator, bids=(("resolver3", 10),), escrows=False)

        status = await coordinator.claim_slot(started.swap_id, 0, started.secret)

        assert status.value == "claimed"
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "completed"
        assert view.partial is True

    @pytest.mark.asyncio
    async def test_expired_slot_claim_keeps_secret_hidden(self, coordinator, settle, clock):
        started = await settle(coordinator)
        clock.advance(coordinator.default_timelock + 1)

        with pytest.raises(Expired):
            await coordinator.claim_slot(started.swap_id, 0, started.secret)

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "settled_on_b"
        assert view.secret_revealed is False

    @pytest.mark.asyncio
    async def test_slot_claim_during_auction(self, coordinator, chain_a):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        await coordinator.submit_bid(started.swap_id, "resolver1", percent=20)

        with pytest.raises(StateConflict):
            await coordinator.claim_slot(started.swap_id, 0, started.secret)

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "locked_on_a"
        assert view.secret_revealed is False
        assert view.slots[0].status == "assigned"
        assert chain_a.calls["claim_slot"] == 0


class TestRefund:
    """Tests for refunds and expiry."""

    @pytest.mark.asyncio
    async def test_refund_before_expiry(self, coordinator):
        started = await _locked(coordinator)

        with pytest.raises(RefundNotAllowed):
            await coordinator.refund(started.swap_id)

    @pytest.mark.asyncio
    async def test_unfilled_swap_refunded_once(self, coordinator, clock, chain_a):
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        await coordinator.close_auction(started.swap_id)
        clock.advance(1801)

        view = await coordinator.refund(started.swap_id)

        assert view.status == "refunded"
        assert view.refund_tx_ref == chain_a.locks[started.swap_id].refund_ref
        with pytest.raises(RefundNotAllowed):
            await coordinator.refund(started.swap_id)

    @pytest.mark.asyncio
    async def test_refund_stops_relay(self, coordinator, settle, clock):
        started = await settle(coordinator)
        clock.advance(1801)

        view = await coordinator.refund(started.swap_id)

        assert view.status == "refunded"
        assert view.refundable is False
        assert not coordinator.relay.is_watching(started.swap_id)

    @pytest.mark.asyncio
    async def test_expired_wins(self, coordinator, settle, clock):
        started = await settle(coordinator)
        clock.advance(1801)

        view = await coordinator.get_swap_status(started.swap_id)
        assert view.refundable is True
        with pytest.raises(Expired):
            await coordinator.claim_settlement(started.swap_id, started.secret)

    @pytest.mark.asyncio
    async def test_bid_after_expiry(self, coordinator, clock):
        started = await _locked(coordinator, timelock_seconds=30)
        await coordinator.start_auction(started.swap_id)
        clock.advance(31)

        with pytest.raises(Expired):
            await coordinator.submit_bid(started.swap_id, "resolver1", percent=20)

    @pytest.mark.asyncio
    async def test_expire_due_auto_refund(self, make_coordinator, clock):
        coordinator = make_coordinator(auto_refund=True)
        started = await _locked(coordinator)
        await coordinator.start_auction(started.swap_id)
        clock.advance(1801)

        handled = await coordinator.expire_due()

        assert handled == [started.swap_id]
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "refunded"
        assert coordinator.engine.get(started.swap_id) is None
        assert await coordinator.expire_due() == []

    @pytest.mark.asyncio
    async def test_expire_due_without_refund(self, coordinator, settle, clock):
        started = await settle(coordinator)
        clock.advance(1801)

        assert await coordinator.expire_due() == [started.swap_id]
        assert not coordinator.relay.is_watching(started.swap_id)
        view = await coordinator.get_swap_status(started.swap_id)
        assert view.status == "settled_on_b"
        assert await coordinator.expire_due() == []


class TestResume:
    """Tests for picking swaps up after a restart."""

    @pytest.mark.asyncio
    async def test_resume_settled_swap(self, make_coordinator, settle, eventually):
        first = make_coordinator()
        started = await settle(first)
        await first.shutdown()

        second = make_coordinator()
        assert await second.resume() == 1
        assert second.relay.is_watching(started.swap_id)

        await second.claim_settlement(started.swap_id, started.secret)

        async def completed():
            return (await second.get_swap_status(started.swap_id)).status == "completed"

        await eventually(completed)

    @pytest.mark.asyncio
    async def test_resume_interrupted_auction(self, make_coordinator):
        """Bids accepted before a restart settle with their slots."""
        first = make_coordinator()
        started = await _locked(first)
        await first.start_auction(started.swap_id)
        await first.submit_bid(started.swap_id, "resolver1", percent=20)
        await first.shutdown()

        second = make_coordinator()
        assert await second.resume() == 1

        view = await second.get_swap_status(started.swap_id)
        assert view.status == "settled_on_b"
        assert view.assigned_units == 2

    @pytest.mark.asyncio
    async def test_resume_skips_unbid_swaps(self, make_coordinator):
        first = make_coordinator()
        await _locked(first)
        await first.shutdown()

        second = make_coordinator()
        assert await second.resume() == 0

    @pytest.mark.asyncio
    async def test_resume_leaves_expired_auction_refundable(self, make_coordinator, clock):
        first = make_coordinator()
        started = await _locked(first)
        await first.start_auction(started.swap_id)
        await first.submit_bid(started.swap_id, "resolver1", percent=20)
        await first.shutdown()
        clock.advance(first.default_timelock + 1)

        second = make_coordinator()
        assert await second.resume() == 0

        view = await second.get_swap_status(started.swap_id)
        assert view.status == "locked_on_a"
        assert view.refundable is True


class TestHistory:
    """Tests for swap listings."""

    @pytest.mark.asyncio
    async def test_swap_history(self, coordinator):
        await coordinator.start_swap("A_TO_B", "0xalice", "GBOB", 10, 10)
        await coordinator.start_swap("A_TO_B", "0xcarol", "GBOB", 10, 10)

        alice = await coordinator.swap_history("0xalice")
        bob = await coordinator.swap_history("GBOB")

        assert [v.initiator for v in alice] == ["0xalice"]
        assert len(bob) == 2
        assert alice[0].slots == []
        assert alice[0].unfilled_units == 10

    @pytest.mark.asyncio
    async def test_list_resolvers(self, coordinator):
        resolvers = coordinator.list_resolvers()

        assert [r["id"] for r in resolvers] == ["resolver1", "resolver2", "resolver3"]
        assert resolvers[1]["min_fill_percent"] == Decimal("20")
