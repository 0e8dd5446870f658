"""Single refund case endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import AuthenticatedActor, require_admin, verify_request
from campaign_escrow.database import get_db
from campaign_escrow.schemas.refund import RefundCaseResponse
from campaign_escrow.services import refund as refund_service

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.get("/{refund_id}", response_model=RefundCaseResponse)
async def get_refund(
    refund_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> RefundCaseResponse:
    case = await refund_service.get_refund(db, refund_id)
    if auth.role == "user" and auth.actor_id != case.donor_id:
        raise HTTPException(status_code=403, detail="Not your refund")
    return RefundCaseResponse.model_validate(case)


@router.post("/{refund_id}/process", response_model=RefundCaseResponse)
async def process_refund(
    refund_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> RefundCaseResponse:
    """Pay out one refund case. Gateway failures surface as 502 and leave it ``failed``."""
    case = await refund_service.process_refund(db, refund_id)
    return RefundCaseResponse.model_validate(case)
