"""Withdrawal request (escrow) and audit log models."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, ForeignKey, Index, Integer, Numeric, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from campaign_escrow.database import Base, JSONType, UTCDateTime, utcnow


class WithdrawalStatus(enum.Enum):
    PENDING_VOTING = "pending_voting"
    VOTING_IN_PROGRESS = "voting_in_progress"
    VOTING_COMPLETED = "voting_completed"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"
    REJECTED_BY_COMMUNITY = "rejected_by_community"
    RELEASED = "released"
    CANCELLED = "cancelled"


NON_TERMINAL_STATUSES: frozenset[WithdrawalStatus] = frozenset({
    WithdrawalStatus.PENDING_VOTING,
    WithdrawalStatus.VOTING_IN_PROGRESS,
    WithdrawalStatus.VOTING_COMPLETED,
    WithdrawalStatus.ADMIN_APPROVED,
})

# Statuses a request may still be cancelled from (no payout in flight)
VOTING_PHASE_STATUSES: frozenset[WithdrawalStatus] = frozenset({
    WithdrawalStatus.PENDING_VOTING,
    WithdrawalStatus.VOTING_IN_PROGRESS,
    WithdrawalStatus.VOTING_COMPLETED,
})

# Valid state transitions
VALID_TRANSITIONS: dict[WithdrawalStatus, set[WithdrawalStatus]] = {
    WithdrawalStatus.PENDING_VOTING: {WithdrawalStatus.VOTING_IN_PROGRESS, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.VOTING_IN_PROGRESS: {
        WithdrawalStatus.VOTING_COMPLETED,
        WithdrawalStatus.REJECTED_BY_COMMUNITY,
        WithdrawalStatus.CANCELLED,
    },
    WithdrawalStatus.VOTING_COMPLETED: {
        WithdrawalStatus.ADMIN_APPROVED,
        WithdrawalStatus.ADMIN_REJECTED,
        WithdrawalStatus.CANCELLED,
    },
    WithdrawalStatus.ADMIN_APPROVED: {WithdrawalStatus.RELEASED},
    WithdrawalStatus.ADMIN_REJECTED: set(),
    WithdrawalStatus.REJECTED_BY_COMMUNITY: set(),
    WithdrawalStatus.RELEASED: set(),
    WithdrawalStatus.CANCELLED: set(),
}

_NON_TERMINAL_SQL = "request_status IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(NON_TERMINAL_STATUSES, key=lambda s: s.value))
)


class EscrowAction(enum.Enum):
    CREATED = "created"
    VOTING_STARTED = "voting_started"
    VOTING_EXTENDED = "voting_extended"
    VOTING_CLOSED = "voting_closed"
    ADMIN_APPROVED = "admin_approved"
    ADMIN_REJECTED = "admin_rejected"
    RELEASE_INITIATED = "release_initiated"
    RELEASED = "released"
    CANCELLED = "cancelled"


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    campaign_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    withdrawal_request_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    request_reason: Mapped[str] = mapped_column(Text, nullable=False)
    request_status: Mapped[WithdrawalStatus] = mapped_column(
        Enum(WithdrawalStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WithdrawalStatus.PENDING_VOTING,
    )
    voting_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    voting_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    voting_extended_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    voting_extended_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    last_extended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    auto_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    milestone_percentage: Mapped[int | None] = mapped_column(Integer, nullable=True)
    admin_reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    admin_reviewed_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    admin_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    community_rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )

    __table_args__ = (
        # One in-flight request per campaign, enforced by storage, not by a lock
        Index(
            "uq_withdrawal_requests_one_active_per_campaign",
            "campaign_id",
            unique=True,
            postgresql_where=text(_NON_TERMINAL_SQL),
            sqlite_where=text(_NON_TERMINAL_SQL),
        ),
        Index("ix_withdrawal_requests_status_end", "request_status", "voting_end_date"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.request_status not in NON_TERMINAL_STATUSES


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    escrow_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("withdrawal_requests.escrow_id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    from_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
