"""Pydantic v2 schemas for stored domain events."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_validator


class DomainEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_id: uuid.UUID
    event_type: str
    target_id: uuid.UUID | None
    campaign_id: uuid.UUID | None
    escrow_id: uuid.UUID | None
    payload: dict
    status: str
    attempts: int
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
