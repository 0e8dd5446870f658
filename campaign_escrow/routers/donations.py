"""Donation confirmation endpoint for the Donation Ledger."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import AuthenticatedActor, require_service
from campaign_escrow.database import get_db
from campaign_escrow.schemas.campaign import DonationResponse
from campaign_escrow.services import ledger

router = APIRouter(prefix="/donations", tags=["donations"])


@router.post("/{donation_id}/complete", response_model=DonationResponse)
async def complete_donation(
    donation_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_service),
    db: AsyncSession = Depends(get_db),
) -> DonationResponse:
    """Payment confirmed: credit the campaign. Repeated calls are no-ops."""
    donation = await ledger.complete_donation(db, donation_id)
    return DonationResponse.model_validate(donation)
