"""Pydantic v2 schemas for payment gateway callbacks and transfer records."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator


class GatewayTransferEvent(BaseModel):
    """Body of a signed gateway confirmation callback."""
    transaction_id: str
    idempotency_key: str
    status: Literal["succeeded", "failed"]
    failure_reason: str | None = None


class PaymentTransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transfer_id: uuid.UUID
    idempotency_key: str
    kind: str
    reference_id: uuid.UUID
    amount: Decimal
    status: str
    gateway_transaction_id: str | None
    attempts: int
    last_error: str | None
    created_at: datetime
    confirmed_at: datetime | None

    @field_validator("kind", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
