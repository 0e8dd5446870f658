"""Pydantic v2 schemas for refund and recovery cases."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RefundCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    refund_id: uuid.UUID
    campaign_id: uuid.UUID
    donor_id: uuid.UUID
    donation_id: uuid.UUID
    original_amount: Decimal
    refunded_amount: Decimal
    paid_amount: Decimal
    refund_ratio: Decimal
    remaining_refund: Decimal
    refund_status: str
    refund_method: str
    refund_transaction_id: str | None
    last_error: str | None
    refunded_at: datetime | None
    created_at: datetime

    @field_validator("refund_status", "refund_method", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class RefundBatchResponse(BaseModel):
    campaign_id: uuid.UUID
    refund_ratio: Decimal
    total_refunded: Decimal
    refund_cases: list[RefundCaseResponse]


class RecoveryCaseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    recovery_case_id: uuid.UUID
    campaign_id: uuid.UUID
    creator_id: uuid.UUID
    total_amount: Decimal
    recovered_amount: Decimal
    distributed_amount: Decimal
    status: str
    deadline: datetime
    legal_case_id: str | None
    escalated_at: datetime | None
    timeline: list | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class RecoveryPayment(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    note: str | None = Field(None, max_length=1024)


class RecoveryEscalation(BaseModel):
    legal_case_id: str = Field(..., min_length=1, max_length=128)
    note: str | None = Field(None, max_length=1024)
