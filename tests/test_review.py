"""Tests for admin review: approve, reject, the review queue and campaign cancellation."""

import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.errors import IllegalTransition, ReasonTooShort
from campaign_escrow.models.campaign import CampaignStatus
from campaign_escrow.models.escrow import EscrowAction, WithdrawalStatus
from campaign_escrow.models.vote import VoteValue
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import ledger
from campaign_escrow.services.review import (
    approve_request,
    cancel_campaign_by_rejection,
    list_for_review,
    reject_request,
)
from campaign_escrow.services.voting import cast_vote
from tests.conftest import donate, finish_voting, make_campaign, open_voting


async def _voted_request(db: AsyncSession, value: VoteValue = VoteValue.APPROVE):  # type: ignore[no-untyped-def]
    campaign = await make_campaign(db)
    donor = uuid.uuid4()
    await donate(db, campaign.campaign_id, "1000.00", donor)
    request = await open_voting(db, campaign, "400.00")
    await cast_vote(db, request.escrow_id, donor, value)
    return campaign, await finish_voting(db, request)


@pytest.mark.asyncio
async def test_approve_request(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    reviewer = uuid.uuid4()

    approved = await approve_request(db_session, request.escrow_id, reviewer)
    assert approved.request_status == WithdrawalStatus.ADMIN_APPROVED
    assert approved.admin_reviewed_by == reviewer
    assert approved.approved_at is not None

    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert trail[-1].action == EscrowAction.ADMIN_APPROVED
    assert trail[-1].actor_id == reviewer


@pytest.mark.asyncio
async def test_approve_twice_refused(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    await approve_request(db_session, request.escrow_id, uuid.uuid4())
    with pytest.raises(IllegalTransition) as exc_info:
        await approve_request(db_session, request.escrow_id, uuid.uuid4())
    assert exc_info.value.detail["current_status"] == "admin_approved"


@pytest.mark.asyncio
async def test_approve_spawns_release_when_enabled(db_session: AsyncSession) -> None:
    object.__setattr__(settings, "auto_disburse_on_approval", True)
    _, request = await _voted_request(db_session)
    with patch("campaign_escrow.services.disbursement.spawn_release") as spawn:
        await approve_request(db_session, request.escrow_id, uuid.uuid4())
    spawn.assert_called_once_with(request.escrow_id)


@pytest.mark.asyncio
async def test_approve_waits_for_payout_when_disabled(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    with patch("campaign_escrow.services.disbursement.spawn_release") as spawn:
        await approve_request(db_session, request.escrow_id, uuid.uuid4())
    spawn.assert_not_called()


@pytest.mark.asyncio
async def test_reject_request(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    rejected = await reject_request(
        db_session, request.escrow_id, uuid.uuid4(), "  Invoices do not match the stated purpose  ",
    )
    assert rejected.request_status == WithdrawalStatus.ADMIN_REJECTED
    assert rejected.admin_rejection_reason == "Invoices do not match the stated purpose"

    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert trail[-1].metadata_ == {"reason": "Invoices do not match the stated purpose"}


@pytest.mark.asyncio
async def test_reject_needs_a_reason(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    with pytest.raises(ReasonTooShort):
        await reject_request(db_session, request.escrow_id, uuid.uuid4(), "no")
    await db_session.refresh(request)
    assert request.request_status == WithdrawalStatus.VOTING_COMPLETED


@pytest.mark.asyncio
async def test_cannot_review_community_rejection(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session, VoteValue.REJECT)
    assert request.request_status == WithdrawalStatus.REJECTED_BY_COMMUNITY
    with pytest.raises(IllegalTransition):
        await approve_request(db_session, request.escrow_id, uuid.uuid4())


@pytest.mark.asyncio
async def test_list_for_review_closes_elapsed_windows(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    donor = uuid.uuid4()
    await donate(db_session, campaign.campaign_id, "1000.00", donor)
    request = await escrow_service.create_withdrawal_request(
        db_session, campaign.campaign_id, Decimal("400.00"),
        "Rent for the workshop space", campaign.creator_id,
    )
    past = escrow_service.utcnow() - timedelta(days=settings.voting_duration_days, minutes=1)
    await escrow_service.start_voting(db_session, request.escrow_id, now=past)
    await cast_vote(
        db_session, request.escrow_id, donor, VoteValue.APPROVE, now=past + timedelta(minutes=1),
    )

    queue = await list_for_review(db_session)
    assert len(queue) == 1
    escrow, tally = queue[0]
    assert escrow.escrow_id == request.escrow_id
    assert escrow.request_status == WithdrawalStatus.VOTING_COMPLETED
    assert tally.approve_count == 1

    assert await list_for_review(db_session, WithdrawalStatus.ADMIN_APPROVED) == []


@pytest.mark.asyncio
async def test_cancel_campaign_after_rejection(db_session: AsyncSession) -> None:
    campaign, request = await _voted_request(db_session, VoteValue.REJECT)
    admin = uuid.uuid4()

    result = await cancel_campaign_by_rejection(db_session, request.escrow_id, admin)
    assert result.was_already_cancelled is False
    assert result.refund_cases_created == 1
    assert result.recovery_case_id is None

    campaign = await ledger.get_campaign(db_session, campaign.campaign_id)
    assert campaign.status == CampaignStatus.CANCELLED
    assert campaign.cancelled_at is not None

    again = await cancel_campaign_by_rejection(db_session, request.escrow_id, admin)
    assert again.was_already_cancelled is True
    assert again.refund_cases_created == 0


@pytest.mark.asyncio
async def test_cancel_campaign_requires_rejected_request(db_session: AsyncSession) -> None:
    _, request = await _voted_request(db_session)
    with pytest.raises(IllegalTransition):
        await cancel_campaign_by_rejection(db_session, request.escrow_id, uuid.uuid4())


@pytest.mark.asyncio
async def test_cancel_campaign_starts_refund_payouts(db_session: AsyncSession) -> None:
    object.__setattr__(settings, "auto_process_refunds", True)
    _, request = await _voted_request(db_session, VoteValue.REJECT)
    with patch("campaign_escrow.services.refund.process_campaign_refunds_task") as task:
        result = await cancel_campaign_by_rejection(db_session, request.escrow_id, uuid.uuid4())
        await asyncio.sleep(0)

    task.assert_awaited_once_with(result.campaign_id)
