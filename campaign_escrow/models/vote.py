"""Donor vote on a withdrawal request."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, ForeignKey, Numeric, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from campaign_escrow.database import Base, UTCDateTime, utcnow


class VoteValue(enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class Vote(Base):
    __tablename__ = "votes"

    vote_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("withdrawal_requests.escrow_id", ondelete="RESTRICT"), nullable=False
    )
    donor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    value: Mapped[VoteValue] = mapped_column(
        Enum(VoteValue, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    weight: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False,
        doc="Donor's cumulative completed donations when the vote was (re)cast",
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )

    __table_args__ = (
        UniqueConstraint("escrow_id", "donor_id", name="uq_votes_escrow_donor"),
    )
