"""Repository for swap registry operations."""

from decimal import Decimal
from typing import Iterable, Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fusioncross.errors import StateConflict, SwapNotFound
from fusioncross.registry.models import (
    TERMINAL_STATUSES,
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

StatusSpec = Union[SwapStatus, Iterable[SwapStatus]]


def _as_set(expected) -> set:
    if isinstance(expected, (SwapStatus, SlotStatus, str)):
        return {expected}
    return set(expected)


def _label(status) -> str:
    return getattr(status, "value", status)


class SwapRepository:
    """Repository for swaps, their slots, bids, escrows and chain transactions.

    Status changes go through compare-and-set updates: the row is only
    written when its current status matches the expected one, so two
    components racing on the same swap never lose an update.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # Swap operations
    async def create_swap(
        self,
        swap_id: str,
        direction: SwapDirection,
        initiator: str,
        recipient: str,
        lock_amount: int,
        settle_amount: int,
        hash_lock: str,
        timelock_expiry: int,
        total_units: int,
    ) -> SwapRecord:
        """Create a pending swap together with its N available slots."""
        swap = SwapRecord(
            id=swap_id,
            direction=direction,
            initiator=initiator,
            recipient=recipient,
            lock_amount=lock_amount,
            settle_amount=settle_amount,
            hash_lock=hash_lock,
            timelock_expiry=timelock_expiry,
            total_units=total_units,
            status=SwapStatus.PENDING,
        )
        self.session.add(swap)
        for index in range(total_units):
            self.session.add(
                ContractSlotRecord(swap_id=swap_id, index=index, status=SlotStatus.AVAILABLE)
            )
        await self.session.flush()
        return await self.require_swap(swap_id)

    async def get_swap(self, swap_id: str) -> Optional[SwapRecord]:
        """Get swap by ID."""
        stmt = (
            select(SwapRecord)
            .where(SwapRecord.id == swap_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def require_swap(self, swap_id: str) -> SwapRecord:
        """Get swap by ID. Raises SwapNotFound if missing."""
        swap = await self.get_swap(swap_id)
        if swap is None:
            raise SwapNotFound(f"Swap {swap_id} not found", swap_id=swap_id)
        return swap

    async def update_status(
        self,
        swap_id: str,
        expected: StatusSpec,
        new_status: SwapStatus,
        **fields,
    ) -> SwapRecord:
        """Compare-and-set the swap status.

        Args:
            swap_id: Swap to update
            expected: Status (or statuses) the swap must currently have
            new_status: Status to write
            **fields: Extra columns written in the same statement

        Returns:
            The refreshed swap

        Raises:
            SwapNotFound: If the swap does not exist
            StateConflict: If the current status is not the expected one
        """
        allowed = _as_set(expected)
        stmt = (
            update(SwapRecord)
            .where(SwapRecord.id == swap_id, SwapRecord.status.in_(list(allowed)))
            .values(status=new_status, version=SwapRecord.version + 1, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)

        if result.rowcount == 0:
            current = await self.require_swap(swap_id)
            raise StateConflict(
                f"Swap {swap_id} is {_label(current.status)}, expected "
                f"{', '.join(sorted(_label(s) for s in allowed))}",
                swap_id=swap_id,
                expected=",".join(sorted(_label(s) for s in allowed)),
                actual=_label(current.status),
            )
        return await self.require_swap(swap_id)

    async def set_fields(self, swap_id: str, **fields) -> SwapRecord:
        """Write non-status columns (refs, error text) without a status change."""
        stmt = (
            update(SwapRecord)
            .where(SwapRecord.id == swap_id)
            .values(version=SwapRecord.version + 1, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise SwapNotFound(f"Swap {swap_id} not found", swap_id=swap_id)
        return await self.require_swap(swap_id)

    async def list_pending(self) -> list[SwapRecord]:
        """Get all swaps that have not reached a terminal status."""
        stmt = (
            select(SwapRecord)
            .where(SwapRecord.status.not_in(list(TERMINAL_STATUSES)))
            .order_by(SwapRecord.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, statuses: StatusSpec) -> list[SwapRecord]:
        """Get swaps in any of the given statuses."""
        stmt = (
            select(SwapRecord)
            .where(SwapRecord.status.in_(list(_as_set(statuses))))
            .order_by(SwapRecord.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_expired(self, now: float) -> list[SwapRecord]:
        """Get non-terminal swaps whose timelock has passed."""
        stmt = (
            select(SwapRecord)
            .where(
                SwapRecord.status.not_in(list(TERMINAL_STATUSES)),
                SwapRecord.timelock_expiry < now,
            )
            .order_by(SwapRecord.timelock_expiry)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_address(self, address: str, limit: int = 50) -> list[SwapRecord]:
        """Get swaps where the address is initiator or recipient, newest first."""
        stmt = (
            select(SwapRecord)
            .where(or_(SwapRecord.initiator == address, SwapRecord.recipient == address))
            .order_by(SwapRecord.created_at.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Slot operations
    async def get_slots(
        self, swap_id: str, status: Optional[SlotStatus] = None
    ) -> list[ContractSlotRecord]:
        """Get a swap's slots ordered by index."""
        stmt = select(ContractSlotRecord).where(ContractSlotRecord.swap_id == swap_id)
        if status is not None:
            stmt = stmt.where(ContractSlotRecord.status == status)
        stmt = stmt.order_by(ContractSlotRecord.index).execution_options(
            populate_existing=True
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_slot(self, swap_id: str, index: int) -> Optional[ContractSlotRecord]:
        stmt = (
            select(ContractSlotRecord)
            .where(ContractSlotRecord.swap_id == swap_id, ContractSlotRecord.index == index)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def assign_slots(self, swap_id: str, indices: list[int], resolver_id: str) -> None:
        """Mark available slots as assigned to a resolver.

        Raises:
            StateConflict: If any slot is no longer available
        """
        stmt = (
            update(ContractSlotRecord)
            .where(
                ContractSlotRecord.swap_id == swap_id,
                ContractSlotRecord.index.in_(indices),
                ContractSlotRecord.status == SlotStatus.AVAILABLE,
            )
            .values(status=SlotStatus.ASSIGNED, owner_resolver_id=resolver_id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount != len(indices):
            raise StateConflict(
                f"Slots {indices} of swap {swap_id} are not all available",
                swap_id=swap_id,
                expected=SlotStatus.AVAILABLE.value,
            )

    async def update_slot_status(
        self,
        swap_id: str,
        index: int,
        expected: Union[SlotStatus, Iterable[SlotStatus]],
        new_status: SlotStatus,
        **fields,
    ) -> ContractSlotRecord:
        """Compare-and-set a slot's status.

        Raises:
            StateConflict: If the slot is missing or not in an expected status
        """
        allowed = _as_set(expected)
        stmt = (
            update(ContractSlotRecord)
            .where(
                ContractSlotRecord.swap_id == swap_id,
                ContractSlotRecord.index == index,
                ContractSlotRecord.status.in_(list(allowed)),
            )
            .values(status=new_status, **fields)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        slot = await self.get_slot(swap_id, index)
        if result.rowcount == 0:
            raise StateConflict(
                f"Slot {index} of swap {swap_id} is "
                f"{_label(slot.status) if slot else 'missing'}",
                swap_id=swap_id,
                expected=",".join(sorted(_label(s) for s in allowed)),
                actual=_label(slot.status) if slot else None,
            )
        return slot

    async def record_slot_attempt(
        self, swap_id: str, index: int, error: Optional[str] = None
    ) -> None:
        """Count one claim attempt against a slot."""
        stmt = (
            update(ContractSlotRecord)
            .where(ContractSlotRecord.swap_id == swap_id, ContractSlotRecord.index == index)
            .values(attempts=ContractSlotRecord.attempts + 1, last_error=error)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    # Bid operations
    async def record_bid(
        self,
        swap_id: str,
        resolver_id: str,
        price: Decimal,
        units: int,
        percent_filled: Decimal,
        slot_indices: list[int],
        sequence: int,
        accepted_at: float,
    ) -> BidRecord:
        """Persist an accepted bid and assign its slots."""
        await self.assign_slots(swap_id, slot_indices, resolver_id)
        bid = BidRecord(
            swap_id=swap_id,
            resolver_id=resolver_id,
            price=price,
            units=units,
            percent_filled=percent_filled,
            slot_indices=",".join(str(i) for i in slot_indices),
            sequence=sequence,
            accepted_at=accepted_at,
        )
        self.session.add(bid)
        await self.session.flush()
        return bid

    async def get_bids(self, swap_id: str) -> list[BidRecord]:
        """Get accepted bids in arrival order."""
        stmt = select(BidRecord).where(BidRecord.swap_id == swap_id).order_by(BidRecord.sequence)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # Escrow operations
    async def add_escrow(
        self,
        swap_id: str,
        resolver_id: str,
        escrow_ref: str,
        escrow_address: str,
        amount: int,
    ) -> ResolverEscrow:
        """Record a resolver's settlement-chain escrow."""
        escrow = ResolverEscrow(
            swap_id=swap_id,
            resolver_id=resolver_id,
            escrow_ref=escrow_ref,
            escrow_address=escrow_address,
            amount=amount,
            status=EscrowStatus.LOCKED,
        )
        self.session.add(escrow)
        await self.session.flush()
        return escrow

    async def get_escrows(
        self, swap_id: str, status: Optional[EscrowStatus] = None
    ) -> list[ResolverEscrow]:
        stmt = select(ResolverEscrow).where(ResolverEscrow.swap_id == swap_id)
        if status is not None:
            stmt = stmt.where(ResolverEscrow.status == status)
        stmt = stmt.order_by(ResolverEscrow.id).execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_escrow_by_ref(self, escrow_ref: str) -> Optional[ResolverEscrow]:
        stmt = select(ResolverEscrow).where(ResolverEscrow.escrow_ref == escrow_ref)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_escrow_claimed(self, escrow_ref: str, claim_ref: Optional[str]) -> bool:
        """Mark an escrow claimed. Returns False if it was already claimed."""
        stmt = (
            update(ResolverEscrow)
            .where(
                ResolverEscrow.escrow_ref == escrow_ref,
                ResolverEscrow.status == EscrowStatus.LOCKED,
            )
            .values(status=EscrowStatus.CLAIMED, claim_ref=claim_ref)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    # Chain transaction audit trail
    async def add_transaction(
        self,
        swap_id: str,
        chain: str,
        tx_type: str,
        tx_ref: Optional[str],
        slot_index: Optional[int] = None,
        status: str = "confirmed",
    ) -> ChainTransaction:
        """Append a chain operation to the swap's audit trail."""
        tx = ChainTransaction(
            swap_id=swap_id,
            chain=chain,
            tx_type=tx_type,
            tx_ref=tx_ref,
            slot_index=slot_index,
            status=status,
        )
        self.session.add(tx)
        await self.session.flush()
        return tx

    async def get_transactions(self, swap_id: str) -> list[ChainTransaction]:
        stmt = (
            select(ChainTransaction)
            .where(ChainTransaction.swap_id == swap_id)
            .order_by(ChainTransaction.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
