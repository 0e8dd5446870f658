"""Pydantic v2 schemas for withdrawal requests (escrow) and their review."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class WithdrawalRequestCreate(BaseModel):
    """Creator asks to release part of the held funds.

    The reason length rule (at least 10 non-blank characters) is enforced by
    the service so that it surfaces as a ``ReasonTooShort`` error rather than
    a generic validation failure.
    """
    amount: Decimal = Field(..., max_digits=14, decimal_places=2)
    reason: str = Field(..., max_length=4096)


class VotingExtension(BaseModel):
    new_end_date: datetime

    @field_validator("new_end_date")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("new_end_date must include a timezone offset")
        return v


class AdminRejection(BaseModel):
    reason: str = Field(..., max_length=4096)


class VoteTallyResponse(BaseModel):
    total_votes: int
    approve_count: int
    reject_count: int
    total_approve_weight: Decimal
    total_reject_weight: Decimal
    approve_percentage: Decimal
    reject_percentage: Decimal


class WithdrawalRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    campaign_id: uuid.UUID
    requested_by: uuid.UUID
    withdrawal_request_amount: Decimal
    request_reason: str
    request_status: str
    voting_start_date: datetime | None
    voting_end_date: datetime | None
    voting_extended_count: int
    last_extended_at: datetime | None
    auto_created: bool
    milestone_percentage: int | None
    admin_reviewed_at: datetime | None
    admin_reviewed_by: uuid.UUID | None
    admin_rejection_reason: str | None
    approved_at: datetime | None
    community_rejected_at: datetime | None
    released_at: datetime | None
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("request_status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class WithdrawalRequestReview(BaseModel):
    """Admin review queue entry: the request plus its current tally."""
    request: WithdrawalRequestResponse
    tally: VoteTallyResponse


class CampaignCancellationResponse(BaseModel):
    escrow_id: uuid.UUID
    campaign_id: uuid.UUID
    was_already_cancelled: bool
    cancelled_request_ids: list[uuid.UUID]
    refund_cases_created: int
    recovery_case_id: uuid.UUID | None


class EscrowAuditEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_audit_id: uuid.UUID
    escrow_id: uuid.UUID
    action: str
    from_status: str | None
    to_status: str | None
    actor_id: uuid.UUID | None
    amount: Decimal
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", mode="before")
    @classmethod
    def serialize_action(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
