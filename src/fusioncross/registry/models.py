"""SQLAlchemy models for the swap registry."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class MinorUnits(TypeDecorator):
    """Integer amount stored as decimal text.

    Minor-unit amounts (wei, stroops) overflow 64-bit columns, so they are
    kept as text and converted back to int on load.
    """

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(int(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class DecimalText(TypeDecorator):
    """Decimal stored as text so prices keep every digit on SQLite."""

    impl = String(80)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class StatusColumn(TypeDecorator):
    """Enum stored by value in a String column, loaded back as the member."""

    impl = String(20)
    cache_ok = True

    def __init__(self, enum_cls, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.enum_cls = enum_cls

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return self.enum_cls(value)


class SwapDirection(str, Enum):
    """Which chain the initiator locks on."""

    A_TO_B = "A_TO_B"  # lock on chain A, resolvers settle on chain B
    B_TO_A = "B_TO_A"


class SwapStatus(str, Enum):
    """Status of a swap."""

    PENDING = "pending"              # Created, nothing locked yet
    LOCKED_ON_A = "locked_on_a"      # Initiator funds locked on the lock chain
    LOCKED_ON_B = "locked_on_b"      # At least one resolver escrow locked
    SETTLED_ON_B = "settled_on_b"    # Auction closed, settlement side final
    SETTLED_ON_A = "settled_on_a"    # Secret revealed, slot claims in progress
    COMPLETED = "completed"          # Every assigned slot claimed or failed
    REFUNDED = "refunded"            # Refunded after timelock expiry
    FAILED = "failed"                # Unrecoverable relay error


class SlotStatus(str, Enum):
    """Status of a contract slot."""

    AVAILABLE = "available"
    ASSIGNED = "assigned"
    CLAIMED = "claimed"
    FAILED = "failed"


class EscrowStatus(str, Enum):
    """Status of a resolver escrow on the settlement chain."""

    LOCKED = "locked"
    CLAIMED = "claimed"


class SwapRecord(Base):
    """One atomic exchange. Never deleted, retained for audit."""

    __tablename__ = "swaps"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    direction: Mapped[SwapDirection] = mapped_column(
        StatusColumn(SwapDirection), nullable=False
    )
    initiator: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    lock_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    settle_amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    hash_lock: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # set on reveal only
    timelock_expiry: Mapped[int] = mapped_column(BigInteger, nullable=False)  # unix seconds
    total_units: Mapped[int] = mapped_column(nullable=False)
    status: Mapped[SwapStatus] = mapped_column(
        StatusColumn(SwapStatus), default=SwapStatus.PENDING, nullable=False, index=True
    )
    lock_tx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    settle_tx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    refund_tx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    slots: Mapped[list["ContractSlotRecord"]] = relationship(
        back_populates="swap", lazy="selectin", order_by="ContractSlotRecord.index"
    )

    def is_expired(self, now: float) -> bool:
        """Check whether the timelock has passed."""
        return now > self.timelock_expiry

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ContractSlotRecord(Base):
    """One of N equal fractional claims against a swap's locked amount."""

    __tablename__ = "contract_slots"
    __table_args__ = (Index("ix_contract_slots_swap_index", "swap_id", "index", unique=True),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(ForeignKey("swaps.id"), nullable=False)
    index: Mapped[int] = mapped_column(nullable=False)
    owner_resolver_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[SlotStatus] = mapped_column(
        StatusColumn(SlotStatus), default=SlotStatus.AVAILABLE, nullable=False
    )
    claim_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    attempts: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    swap: Mapped["SwapRecord"] = relationship(back_populates="slots")


class BidRecord(Base):
    """An accepted resolver bid."""

    __tablename__ = "bids"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(ForeignKey("swaps.id"), nullable=False, index=True)
    resolver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    price: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    units: Mapped[int] = mapped_column(nullable=False)
    percent_filled: Mapped[Decimal] = mapped_column(DecimalText, nullable=False)
    slot_indices: Mapped[str] = mapped_column(String(255), nullable=False)  # "0,1,2"
    sequence: Mapped[int] = mapped_column(nullable=False)
    accepted_at: Mapped[float] = mapped_column(nullable=False)  # unix seconds

    @property
    def indices(self) -> list[int]:
        return [int(i) for i in self.slot_indices.split(",") if i]


class ResolverEscrow(Base):
    """Settlement-chain escrow locked by a resolver for its slots."""

    __tablename__ = "resolver_escrows"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(ForeignKey("swaps.id"), nullable=False, index=True)
    resolver_id: Mapped[str] = mapped_column(String(64), nullable=False)
    escrow_ref: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    escrow_address: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[int] = mapped_column(MinorUnits, nullable=False)
    status: Mapped[EscrowStatus] = mapped_column(
        StatusColumn(EscrowStatus), default=EscrowStatus.LOCKED, nullable=False
    )
    claim_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ChainTransaction(Base):
    """Audit trail of chain operations issued for a swap."""

    __tablename__ = "chain_transactions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    swap_id: Mapped[str] = mapped_column(ForeignKey("swaps.id"), nullable=False, index=True)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    tx_type: Mapped[str] = mapped_column(String(20), nullable=False)  # lock, slot_claim, ...
    tx_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    slot_index: Mapped[Optional[int]] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="confirmed")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.REFUNDED, SwapStatus.FAILED})
LOCKED_STATUSES = frozenset(
    {
        SwapStatus.LOCKED_ON_A,
        SwapStatus.LOCKED_ON_B,
        SwapStatus.SETTLED_ON_B,
        SwapStatus.SETTLED_ON_A,
    }
)
# Slots may only be claimed once the resolvers settled on the settlement chain
SETTLED_STATUSES = frozenset({SwapStatus.SETTLED_ON_B, SwapStatus.SETTLED_ON_A})
TERMINAL_SLOT_STATUSES = frozenset({SlotStatus.CLAIMED, SlotStatus.FAILED})
