"""Campaign endpoints: projection upsert, donations, withdrawal requests, refunds."""

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.auth.middleware import (
    AuthenticatedActor,
    require_admin,
    require_service,
    verify_request,
)
from campaign_escrow.database import get_db
from campaign_escrow.models.campaign import CampaignStatus
from campaign_escrow.models.escrow import WithdrawalStatus
from campaign_escrow.schemas.campaign import (
    CampaignBalanceResponse,
    CampaignResponse,
    CampaignUpsert,
    DonationCreate,
    DonationResponse,
    EligibleVoterResponse,
)
from campaign_escrow.schemas.escrow import WithdrawalRequestCreate, WithdrawalRequestResponse
from campaign_escrow.schemas.refund import (
    RecoveryCaseResponse,
    RecoveryEscalation,
    RecoveryPayment,
    RefundBatchResponse,
    RefundCaseResponse,
)
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import ledger
from campaign_escrow.services import refund as refund_service

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


@router.post("", response_model=CampaignResponse)
async def upsert_campaign(
    data: CampaignUpsert,
    auth: AuthenticatedActor = Depends(require_service),
    db: AsyncSession = Depends(get_db),
) -> CampaignResponse:
    """Campaign Service pushes its campaign projection."""
    campaign = await ledger.register_campaign(
        db,
        data.campaign_id,
        data.creator_id,
        data.goal_amount,
        title=data.title,
        status=CampaignStatus(data.status),
    )
    return CampaignResponse.model_validate(campaign)


@router.get("/{campaign_id}", response_model=CampaignBalanceResponse)
async def get_campaign(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> CampaignBalanceResponse:
    campaign = await ledger.get_campaign(db, campaign_id)
    available = await ledger.get_available_balance(db, campaign_id)
    released = await ledger.get_total_released(db, campaign_id)
    base = CampaignResponse.model_validate(campaign)
    return CampaignBalanceResponse(
        **base.model_dump(), available_balance=available, total_released=released,
    )


@router.post("/{campaign_id}/donations", response_model=DonationResponse, status_code=201)
async def record_donation(
    campaign_id: uuid.UUID,
    data: DonationCreate,
    auth: AuthenticatedActor = Depends(require_service),
    db: AsyncSession = Depends(get_db),
) -> DonationResponse:
    """Donation Ledger records a donation awaiting payment confirmation."""
    donation = await ledger.record_donation(db, campaign_id, data.donor_id, data.amount)
    return DonationResponse.model_validate(donation)


@router.post(
    "/{campaign_id}/withdrawal-requests",
    response_model=WithdrawalRequestResponse,
    status_code=201,
)
async def create_withdrawal_request(
    campaign_id: uuid.UUID,
    data: WithdrawalRequestCreate,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> WithdrawalRequestResponse:
    """Creator asks to release funds. Voting opens automatically."""
    escrow = await escrow_service.create_withdrawal_request(
        db, campaign_id, data.amount, data.reason, auth.actor_id,
    )
    return WithdrawalRequestResponse.model_validate(escrow)


@router.get("/{campaign_id}/withdrawal-requests", response_model=list[WithdrawalRequestResponse])
async def list_withdrawal_requests(
    campaign_id: uuid.UUID,
    status: WithdrawalStatus | None = None,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[WithdrawalRequestResponse]:
    requests = await escrow_service.list_campaign_requests(db, campaign_id, status)
    return [WithdrawalRequestResponse.model_validate(r) for r in requests]


@router.get("/{campaign_id}/eligible-voters", response_model=list[EligibleVoterResponse])
async def list_eligible_voters(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[EligibleVoterResponse]:
    """Donors who can vote on this campaign's requests, largest contributor first."""
    voters = await ledger.list_eligible_voters(db, campaign_id)
    return [EligibleVoterResponse.model_validate(v) for v in voters]


@router.get("/{campaign_id}/refunds", response_model=list[RefundCaseResponse])
async def list_refunds(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[RefundCaseResponse]:
    """Refund cases of a campaign. Donors only see their own."""
    cases = await refund_service.list_refunds(db, campaign_id)
    if auth.role == "user":
        cases = [c for c in cases if c.donor_id == auth.actor_id]
    return [RefundCaseResponse.model_validate(c) for c in cases]


@router.post("/{campaign_id}/refunds", response_model=RefundBatchResponse)
async def calculate_refunds(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> RefundBatchResponse:
    """Compute proportional refunds for a cancelled campaign. Safe to re-run."""
    batch = await refund_service.calculate_proportional_refunds(db, campaign_id, auth.actor_id)
    await refund_service.create_recovery_case(db, campaign_id, created_by=auth.actor_id)
    return RefundBatchResponse(
        campaign_id=batch.campaign_id,
        refund_ratio=batch.refund_ratio,
        total_refunded=batch.total_refunded,
        refund_cases=[RefundCaseResponse.model_validate(c) for c in batch.refund_cases],
    )


@router.post("/{campaign_id}/refunds/process", response_model=list[RefundCaseResponse])
async def process_refunds(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[RefundCaseResponse]:
    """Pay out every refund case with an unpaid amount."""
    cases = await refund_service.process_campaign_refunds(db, campaign_id)
    return [RefundCaseResponse.model_validate(c) for c in cases]


@router.post("/{campaign_id}/refunds/retry", response_model=list[RefundCaseResponse])
async def retry_refunds(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[RefundCaseResponse]:
    cases = await refund_service.retry_failed_refunds(db, campaign_id)
    return [RefundCaseResponse.model_validate(c) for c in cases]


@router.get("/{campaign_id}/recovery-case", response_model=RecoveryCaseResponse)
async def get_recovery_case(
    campaign_id: uuid.UUID,
    auth: AuthenticatedActor = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> RecoveryCaseResponse:
    case = await refund_service.get_recovery_case(db, campaign_id)
    if auth.role == "user" and auth.actor_id != case.creator_id:
        raise HTTPException(status_code=403, detail="Only the creator or an admin can view this")
    return RecoveryCaseResponse.model_validate(case)


@router.post("/{campaign_id}/recovery-case/payments", response_model=RecoveryCaseResponse)
async def record_recovery_payment(
    campaign_id: uuid.UUID,
    data: RecoveryPayment,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> RecoveryCaseResponse:
    """Record money returned by the creator; it is distributed to donors right away."""
    case = await refund_service.record_recovery_payment(
        db, campaign_id, data.amount, actor_id=auth.actor_id, note=data.note,
    )
    return RecoveryCaseResponse.model_validate(case)


@router.post("/{campaign_id}/recovery-case/escalate", response_model=RecoveryCaseResponse)
async def escalate_recovery_case(
    campaign_id: uuid.UUID,
    data: RecoveryEscalation,
    auth: AuthenticatedActor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> RecoveryCaseResponse:
    """Move an unresolved recovery case to legal action."""
    case = await refund_service.escalate_recovery_case(
        db, campaign_id, auth.actor_id, data.legal_case_id, note=data.note,
    )
    return RecoveryCaseResponse.model_validate(case)
