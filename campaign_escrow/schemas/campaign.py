"""Pydantic v2 schemas for the campaign funding ledger."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CampaignUpsert(BaseModel):
    """Campaign projection pushed by the Campaign Service."""
    campaign_id: uuid.UUID
    creator_id: uuid.UUID
    title: str = Field("", max_length=256)
    goal_amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)
    status: str = "active"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        from campaign_escrow.models.campaign import CampaignStatus

        allowed = {s.value for s in CampaignStatus}
        if v not in allowed:
            raise ValueError(f"status must be one of {sorted(allowed)}")
        return v


class CampaignResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    campaign_id: uuid.UUID
    creator_id: uuid.UUID
    title: str
    goal_amount: Decimal
    current_amount: Decimal
    total_raised: Decimal
    status: str
    cancelled_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class CampaignBalanceResponse(CampaignResponse):
    available_balance: Decimal
    total_released: Decimal


class DonationCreate(BaseModel):
    donor_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=14, decimal_places=2)


class DonationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    donation_id: uuid.UUID
    campaign_id: uuid.UUID
    donor_id: uuid.UUID
    amount: Decimal
    status: str
    created_at: datetime
    completed_at: datetime | None
    refunded_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class EligibleVoterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    donor_id: uuid.UUID
    total_donated: Decimal
