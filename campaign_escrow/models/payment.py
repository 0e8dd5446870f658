"""Outbound payment transfers (disbursements and refunds)."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from campaign_escrow.database import Base, JSONType, UTCDateTime, utcnow


class TransferKind(enum.Enum):
    DISBURSEMENT = "disbursement"
    REFUND = "refund"


class TransferStatus(enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PaymentTransfer(Base):
    """One row per idempotency key. The gateway dedupes payouts on the same key."""
    __tablename__ = "payment_transfers"

    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    idempotency_key: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    kind: Mapped[TransferKind] = mapped_column(
        Enum(TransferKind, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    reference_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, nullable=False, index=True, doc="escrow_id or refund_id"
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransferStatus.PENDING,
    )
    gateway_transaction_id: Mapped[str | None] = mapped_column(
        String(128), nullable=True, index=True
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
