"""Recovery cases across campaigns, looked up by creator."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import AuthenticatedActor, verify_request
from campaign_escrow.database import get_db
from campaign_escrow.schemas.refund import RecoveryCaseResponse
from campaign_escrow.services import refund as refund_service

router = APIRouter(prefix="/recovery-cases", tags=["recovery"])


@router.get("", response_model=list[RecoveryCaseResponse])
async def list_recovery_cases(
    creator_id: uuid.UUID | None = None,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[RecoveryCaseResponse]:
    """Recovery cases owed by one creator, newest first. Users only see their own."""
    if creator_id is None:
        creator_id = auth.actor_id
    if auth.role == "user" and creator_id != auth.actor_id:
        raise HTTPException(status_code=403, detail="Only the creator or an admin can view this")
    cases = await refund_service.list_recovery_cases_by_creator(db, creator_id)
    return [RecoveryCaseResponse.model_validate(c) for c in cases]
