"""Refund cases (per donation) and recovery cases (per campaign creator)."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Numeric, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from campaign_escrow.database import Base, JSONType, UTCDateTime, utcnow


class RefundStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"


class RefundMethod(enum.Enum):
    ESCROW = "escrow"      # paid from funds the platform still holds
    RECOVERY = "recovery"  # owed from funds already paid to the creator


class RecoveryStatus(enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    LEGAL_ACTION = "legal_action"


class RefundCase(Base):
    __tablename__ = "refund_cases"

    refund_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    donation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("donations.donation_id", ondelete="RESTRICT"), nullable=False
    )
    original_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00"),
        doc="Part of refunded_amount confirmed as paid out by the gateway",
    )
    refund_ratio: Mapped[Decimal] = mapped_column(Numeric(12, 10), nullable=False)
    remaining_refund: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    refund_status: Mapped[RefundStatus] = mapped_column(
        Enum(RefundStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=RefundStatus.PENDING,
    )
    refund_method: Mapped[RefundMethod] = mapped_column(
        Enum(RefundMethod, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    refund_transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("donation_id", "refund_method", name="uq_refund_cases_donation_method"),
    )


class RecoveryCase(Base):
    __tablename__ = "recovery_cases"

    recovery_case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    creator_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, doc="Amount released to the creator before cancellation"
    )
    recovered_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00")
    )
    distributed_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal("0.00"),
        doc="Part of recovered_amount already allocated to donor refunds",
    )
    status: Mapped[RecoveryStatus] = mapped_column(
        Enum(RecoveryStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=RecoveryStatus.PENDING,
    )
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    legal_case_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    timeline: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )
