"""Admin endpoints: review queue, approve/reject, voting extension, cancellation, release, event log."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import AuthenticatedActor, require_admin
from campaign_escrow.database import get_db
from campaign_escrow.models.escrow import WithdrawalStatus
from campaign_escrow.schemas.escrow import (
    AdminRejection,
    CampaignCancellationResponse,
    VoteTallyResponse,
    VotingExtension,
    WithdrawalRequestResponse,
    WithdrawalRequestReview,
)
from campaign_escrow.schemas.event import DomainEventResponse
from campaign_escrow.services import disbursement
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import review as review_service
from campaign_escrow.services.webhooks import list_events

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/withdrawal-requests", response_model=list[WithdrawalRequestReview])
async def review_queue(
    status: WithdrawalStatus = WithdrawalStatus.VOTING_COMPLETED,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[WithdrawalRequestReview]:
    """Requests awaiting a decision, each with its vote tally."""
    entries = await review_service.list_for_review(db, status)
    return [
        WithdrawalRequestReview(
            request=WithdrawalRequestResponse.model_validate(escrow),
            tally=VoteTallyResponse.model_validate(tally, from_attributes=True),
        )
        for escrow, tally in entries
    ]


@router.post("/withdrawal-requests/{escrow_id}/approve", response_model=WithdrawalRequestResponse)
async def approve(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    escrow = await review_service.approve_request(db, escrow_id, auth.actor_id)
    return WithdrawalRequestResponse.model_validate(escrow)


@router.post("/withdrawal-requests/{escrow_id}/reject", response_model=WithdrawalRequestResponse)
async def reject(
    escrow_id: uuid.UUID,
    data: AdminRejection,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    escrow = await review_service.reject_request(db, escrow_id, auth.actor_id, data.reason)
    return WithdrawalRequestResponse.model_validate(escrow)


@router.post(
    "/withdrawal-requests/{escrow_id}/extend-voting",
    response_model=WithdrawalRequestResponse,
)
async def extend_voting(
    escrow_id: uuid.UUID,
    data: VotingExtension,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    escrow = await escrow_service.extend_voting(db, escrow_id, data.new_end_date, auth.actor_id)
    return WithdrawalRequestResponse.model_validate(escrow)


@router.post(
    "/withdrawal-requests/{escrow_id}/cancel-campaign",
    response_model=CampaignCancellationResponse,
)
async def cancel_campaign(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> CampaignCancellationResponse:
    """Cancel the campaign behind a rejected request and compute donor refunds."""
    result = await review_service.cancel_campaign_by_rejection(db, escrow_id, auth.actor_id)
    return CampaignCancellationResponse.model_validate(result, from_attributes=True)


@router.post("/withdrawal-requests/{escrow_id}/release", response_model=WithdrawalRequestResponse)
async def release(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    """Run (or retry) the payout of an approved request."""
    escrow = await disbursement.release_escrow(db, escrow_id)
    return WithdrawalRequestResponse.model_validate(escrow)


@router.get("/events", response_model=list[DomainEventResponse])
async def events(
    campaign_id: uuid.UUID | None = None,
    escrow_id: uuid.UUID | None = None,
    event_type: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[DomainEventResponse]:
    """Stored domain events, filtered by campaign or withdrawal request."""
    deliveries = await list_events(
        db, campaign_id=campaign_id, escrow_id=escrow_id, event_type=event_type, limit=limit,
    )
    return [DomainEventResponse.model_validate(d) for d in deliveries]
