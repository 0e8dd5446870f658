"""Admin review gate: approve or reject a request after its vote, and cancel a
campaign whose request was rejected."""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.database import utcnow
from campaign_escrow.errors import ReasonTooShort
from campaign_escrow.models.campaign import CampaignStatus
from campaign_escrow.models.escrow import EscrowAction, WithdrawalRequest, WithdrawalStatus
from campaign_escrow.services import ledger
from campaign_escrow.services.escrow import (
    _log_audit,
    cancel_voting_phase_requests,
    compare_and_set_status,
    get_escrow,
    get_withdrawal_request,
    illegal_transition,
)
from campaign_escrow.services.voting import VoteTally, tally_votes
from campaign_escrow.services.webhooks import notify, notify_escrow_event

logger = logging.getLogger(__name__)


@dataclass
class CampaignCancellation:
    escrow_id: uuid.UUID
    campaign_id: uuid.UUID
    was_already_cancelled: bool
    cancelled_request_ids: list[uuid.UUID] = field(default_factory=list)
    refund_cases_created: int = 0
    recovery_case_id: uuid.UUID | None = None


async def approve_request(
    db: AsyncSession, escrow_id: uuid.UUID, reviewer_id: uuid.UUID
) -> WithdrawalRequest:
    """Approve a request whose vote passed. Disbursement starts right away
    when ``auto_disburse_on_approval`` is on."""
    escrow = await get_withdrawal_request(db, escrow_id)
    now = utcnow()
    won = await compare_and_set_status(
        db, escrow_id, WithdrawalStatus.VOTING_COMPLETED, WithdrawalStatus.ADMIN_APPROVED,
        admin_reviewed_at=now, admin_reviewed_by=reviewer_id, approved_at=now,
    )
    if not won:
        await db.rollback()
        escrow = await get_escrow(db, escrow_id)
        raise illegal_transition(escrow, WithdrawalStatus.VOTING_COMPLETED)

    await _log_audit(
        db, escrow_id, EscrowAction.ADMIN_APPROVED, escrow.withdrawal_request_amount, reviewer_id,
        from_status=WithdrawalStatus.VOTING_COMPLETED,
        to_status=WithdrawalStatus.ADMIN_APPROVED,
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Withdrawal %s approved by %s", escrow_id, reviewer_id)

    await notify_escrow_event(db, escrow, "withdrawal.approved", {"reviewed_by": reviewer_id})

    if settings.auto_disburse_on_approval:
        from campaign_escrow.services.disbursement import spawn_release
        spawn_release(escrow_id)
    return escrow


async def reject_request(
    db: AsyncSession, escrow_id: uuid.UUID, reviewer_id: uuid.UUID, reason: str
) -> WithdrawalRequest:
    reason = (reason or "").strip()
    if len(reason) < settings.min_reason_length:
        raise ReasonTooShort(
            f"Rejection reason must be at least {settings.min_reason_length} characters",
            min_length=settings.min_reason_length,
        )

    escrow = await get_withdrawal_request(db, escrow_id)
    now = utcnow()
    won = await compare_and_set_status(
        db, escrow_id, WithdrawalStatus.VOTING_COMPLETED, WithdrawalStatus.ADMIN_REJECTED,
        admin_reviewed_at=now, admin_reviewed_by=reviewer_id, admin_rejection_reason=reason,
    )
    if not won:
        await db.rollback()
        escrow = await get_escrow(db, escrow_id)
        raise illegal_transition(escrow, WithdrawalStatus.VOTING_COMPLETED)

    await _log_audit(
        db, escrow_id, EscrowAction.ADMIN_REJECTED, escrow.withdrawal_request_amount, reviewer_id,
        from_status=WithdrawalStatus.VOTING_COMPLETED,
        to_status=WithdrawalStatus.ADMIN_REJECTED,
        metadata={"reason": reason},
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Withdrawal %s rejected by %s", escrow_id, reviewer_id)

    await notify_escrow_event(db, escrow, "withdrawal.rejected", {
        "reviewed_by": reviewer_id,
        "reason": reason,
    })
    return escrow


async def list_for_review(
    db: AsyncSession,
    status: WithdrawalStatus = WithdrawalStatus.VOTING_COMPLETED,
) -> list[tuple[WithdrawalRequest, VoteTally]]:
    """Requests in ``status`` with their current tallies, oldest first."""
    if status == WithdrawalStatus.VOTING_COMPLETED:
        # Close elapsed windows the sweep has not reached yet
        result = await db.execute(
            select(WithdrawalRequest.escrow_id).where(
                WithdrawalRequest.request_status == WithdrawalStatus.VOTING_IN_PROGRESS,
                WithdrawalRequest.voting_end_date <= utcnow(),
            )
        )
        for escrow_id in result.scalars().all():
            await get_withdrawal_request(db, escrow_id)

    result = await db.execute(
        select(WithdrawalRequest)
        .where(WithdrawalRequest.request_status == status)
        .order_by(WithdrawalRequest.updated_at)
    )
    requests = list(result.scalars().all())
    return [(escrow, await tally_votes(db, escrow.escrow_id)) for escrow in requests]


async def cancel_campaign_by_rejection(
    db: AsyncSession, escrow_id: uuid.UUID, admin_id: uuid.UUID
) -> CampaignCancellation:
    """Cancel the campaign behind a rejected request and refund its donors.

    Refused while another request of the campaign is approved and waiting
    for payout. Safe to repeat: a cancelled campaign is not cancelled again
    and refunds only cover donations not yet refunded.
    """
    escrow = await get_withdrawal_request(db, escrow_id)
    if escrow.request_status not in (
        WithdrawalStatus.ADMIN_REJECTED, WithdrawalStatus.REJECTED_BY_COMMUNITY,
    ):
        raise illegal_transition(
            escrow, WithdrawalStatus.ADMIN_REJECTED, WithdrawalStatus.REJECTED_BY_COMMUNITY,
        )
    campaign_id = escrow.campaign_id

    result = await db.execute(
        select(WithdrawalRequest).where(
            WithdrawalRequest.campaign_id == campaign_id,
            WithdrawalRequest.request_status == WithdrawalStatus.ADMIN_APPROVED,
        )
    )
    in_flight = result.scalars().first()
    if in_flight is not None:
        raise illegal_transition(in_flight, WithdrawalStatus.ADMIN_REJECTED)

    cancelled = await cancel_voting_phase_requests(
        db, campaign_id, actor_id=admin_id, exclude=escrow_id,
    )

    campaign = await ledger.get_campaign(db, campaign_id, for_update=True)
    was_already_cancelled = campaign.status == CampaignStatus.CANCELLED
    if not was_already_cancelled:
        campaign.status = CampaignStatus.CANCELLED
        campaign.cancelled_at = utcnow()
        await db.commit()
        logger.info("Campaign %s cancelled by %s after rejection of %s", campaign_id, admin_id, escrow_id)
        await notify(db, "campaign.cancelled", campaign_id, {
            "campaign_id": campaign_id,
            "escrow_id": escrow_id,
            "cancelled_by": admin_id,
            "rejection": escrow.request_status.value,
        })
    else:
        await db.commit()

    from campaign_escrow.services import refund as refund_service
    batch = await refund_service.calculate_proportional_refunds(db, campaign_id, actor_id=admin_id)
    recovery = await refund_service.create_recovery_case(db, campaign_id, created_by=admin_id)

    if settings.auto_process_refunds and batch.refund_cases:
        asyncio.create_task(refund_service.process_campaign_refunds_task(campaign_id))

    return CampaignCancellation(
        escrow_id=escrow_id,
        campaign_id=campaign_id,
        was_already_cancelled=was_already_cancelled,
        cancelled_request_ids=[e.escrow_id for e in cancelled],
        refund_cases_created=len(batch.refund_cases),
        recovery_case_id=recovery.recovery_case_id if recovery else None,
    )
