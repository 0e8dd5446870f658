"""Pydantic v2 schemas for donor votes."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator


class VoteCast(BaseModel):
    value: Literal["approve", "reject"]


class VoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    vote_id: uuid.UUID
    escrow_id: uuid.UUID
    donor_id: uuid.UUID
    value: str
    weight: Decimal
    created_at: datetime
    updated_at: datetime

    @field_validator("value", mode="before")
    @classmethod
    def serialize_value(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
