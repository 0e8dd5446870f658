"""Withdrawal request endpoints: state, votes, tally and audit trail."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import AuthenticatedActor, require_admin, verify_request
from campaign_escrow.database import get_db
from campaign_escrow.models.vote import VoteValue
from campaign_escrow.schemas.escrow import (
    EscrowAuditEntryResponse,
    VoteTallyResponse,
    WithdrawalRequestResponse,
)
from campaign_escrow.schemas.vote import VoteCast, VoteResponse
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import voting as voting_service

router = APIRouter(prefix="/withdrawal-requests", tags=["withdrawal-requests"])


@router.get("/{escrow_id}", response_model=WithdrawalRequestResponse)
async def get_withdrawal_request(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    escrow = await escrow_service.get_withdrawal_request(db, escrow_id)
    return WithdrawalRequestResponse.model_validate(escrow)


@router.post("/{escrow_id}/votes", response_model=VoteResponse)
async def cast_vote(
    escrow_id: uuid.UUID,
    data: VoteCast,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> VoteResponse:
    """Donor casts or replaces their vote. Weight is their donation total right now."""
    vote = await voting_service.cast_vote(db, escrow_id, auth.actor_id, VoteValue(data.value))
    return VoteResponse.model_validate(vote)


@router.get("/{escrow_id}/votes", response_model=list[VoteResponse])
async def list_votes(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[VoteResponse]:
    await escrow_service.get_escrow(db, escrow_id)
    votes = await voting_service.list_votes(db, escrow_id)
    return [VoteResponse.model_validate(v) for v in votes]


@router.get("/{escrow_id}/tally", response_model=VoteTallyResponse)
async def get_tally(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> VoteTallyResponse:
    await escrow_service.get_escrow(db, escrow_id)
    tally = await voting_service.tally_votes(db, escrow_id)
    return VoteTallyResponse.model_validate(tally, from_attributes=True)


@router.get("/{escrow_id}/audit", response_model=list[EscrowAuditEntryResponse])
async def get_audit_trail(
    escrow_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[EscrowAuditEntryResponse]:
    await escrow_service.get_escrow(db, escrow_id)
    entries = await escrow_service.get_audit_trail(db, escrow_id)
    return [EscrowAuditEntryResponse.model_validate(e) for e in entries]
