"""Tests for withdrawal request creation, the one-active-request rule and the audit trail."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.errors import (
    AmountExceedsAvailable,
    CampaignNotActive,
    EscrowNotFound,
    Forbidden,
    IllegalTransition,
    InvalidAmount,
    PendingRequestExists,
    ReasonTooShort,
)
from campaign_escrow.models.campaign import CampaignStatus
from campaign_escrow.models.escrow import (
    VALID_TRANSITIONS,
    EscrowAction,
    WithdrawalRequest,
    WithdrawalStatus,
)
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services.escrow import _insert_request, compare_and_set_status
from tests.conftest import donate, make_campaign, open_voting

REASON = "Venue deposit for the launch event"


async def _funded_campaign(db: AsyncSession, amount: str = "1000.00"):  # type: ignore[no-untyped-def]
    campaign = await make_campaign(db)
    await donate(db, campaign.campaign_id, amount)
    return campaign


@pytest.mark.asyncio
async def test_create_request(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    request = await escrow_service.create_withdrawal_request(
        db_session, campaign.campaign_id, Decimal("300.00"), f"  {REASON}  ", campaign.creator_id,
    )
    assert request.request_status == WithdrawalStatus.PENDING_VOTING
    assert request.request_reason == REASON
    assert request.auto_created is False
    assert request.voting_start_date is None

    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert [e.action for e in trail] == [EscrowAction.CREATED]
    assert trail[0].to_status == "pending_voting"


@pytest.mark.asyncio
async def test_only_creator_can_request(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    with pytest.raises(Forbidden):
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal("10.00"), REASON, uuid.uuid4(),
        )


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-5.00"])
async def test_non_positive_amount_rejected(db_session: AsyncSession, amount: str) -> None:
    campaign = await _funded_campaign(db_session)
    with pytest.raises(InvalidAmount):
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal(amount), REASON, campaign.creator_id,
        )


@pytest.mark.asyncio
async def test_reason_too_short(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    with pytest.raises(ReasonTooShort):
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal("10.00"), "   short    ", campaign.creator_id,
        )


@pytest.mark.asyncio
async def test_amount_above_available(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session, "100.00")
    with pytest.raises(AmountExceedsAvailable) as exc_info:
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal("100.01"), REASON, campaign.creator_id,
        )
    assert exc_info.value.status_code == 422
    assert exc_info.value.detail["code"] == "AmountExceedsAvailable"
    assert exc_info.value.detail["available"] == "100.00"


@pytest.mark.asyncio
async def test_inactive_campaign_rejected(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    await escrow_service.ledger.register_campaign(
        db_session, campaign.campaign_id, campaign.creator_id, campaign.goal_amount,
        status=CampaignStatus.COMPLETED,
    )
    with pytest.raises(CampaignNotActive):
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal("10.00"), REASON, campaign.creator_id,
        )


@pytest.mark.asyncio
async def test_second_active_request_rejected(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    await open_voting(db_session, campaign, "100.00")
    with pytest.raises(PendingRequestExists) as exc_info:
        await escrow_service.create_withdrawal_request(
            db_session, campaign.campaign_id, Decimal("100.00"), REASON, campaign.creator_id,
        )
    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_storage_rejects_second_active_request(db_session: AsyncSession) -> None:
    """The partial unique index holds even when the application check is bypassed."""
    campaign = await _funded_campaign(db_session)
    await open_voting(db_session, campaign, "100.00")

    campaign_id, creator_id = campaign.campaign_id, campaign.creator_id
    with pytest.raises(PendingRequestExists):
        await _insert_request(db_session, campaign, Decimal("50.00"), REASON, creator_id)

    db_session.add(WithdrawalRequest(
        escrow_id=uuid.uuid4(),
        campaign_id=campaign_id,
        requested_by=creator_id,
        withdrawal_request_amount=Decimal("50.00"),
        request_reason=REASON,
        request_status=WithdrawalStatus.VOTING_COMPLETED,
    ))
    with pytest.raises(IntegrityError):
        await db_session.commit()
    await db_session.rollback()


@pytest.mark.asyncio
async def test_new_request_allowed_after_terminal(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    first = await open_voting(db_session, campaign, "100.00")
    cancelled = await escrow_service.cancel_voting_phase_requests(db_session, campaign.campaign_id)
    assert [r.escrow_id for r in cancelled] == [first.escrow_id]

    second = await escrow_service.create_withdrawal_request(
        db_session, campaign.campaign_id, Decimal("100.00"), REASON, campaign.creator_id,
    )
    assert second.escrow_id != first.escrow_id


@pytest.mark.asyncio
async def test_compare_and_set_single_winner(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    request = await escrow_service.create_withdrawal_request(
        db_session, campaign.campaign_id, Decimal("100.00"), REASON, campaign.creator_id,
    )
    first = await compare_and_set_status(
        db_session, request.escrow_id, WithdrawalStatus.PENDING_VOTING, WithdrawalStatus.CANCELLED,
    )
    second = await compare_and_set_status(
        db_session, request.escrow_id, WithdrawalStatus.PENDING_VOTING, WithdrawalStatus.CANCELLED,
    )
    await db_session.commit()
    assert (first, second) == (True, False)


@pytest.mark.asyncio
async def test_compare_and_set_refuses_invalid_transition(db_session: AsyncSession) -> None:
    with pytest.raises(ValueError):
        await compare_and_set_status(
            db_session, uuid.uuid4(), WithdrawalStatus.PENDING_VOTING, WithdrawalStatus.RELEASED,
        )


def test_terminal_statuses_have_no_exits() -> None:
    for status in (
        WithdrawalStatus.RELEASED,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.ADMIN_REJECTED,
        WithdrawalStatus.REJECTED_BY_COMMUNITY,
    ):
        assert VALID_TRANSITIONS[status] == set()
    assert VALID_TRANSITIONS[WithdrawalStatus.ADMIN_APPROVED] == {WithdrawalStatus.RELEASED}


@pytest.mark.asyncio
async def test_start_voting_sets_window(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    request = await open_voting(db_session, campaign, "100.00")

    assert request.request_status == WithdrawalStatus.VOTING_IN_PROGRESS
    assert request.voting_end_date - request.voting_start_date == escrow_service.settings.voting_duration

    again = await escrow_service.start_voting(db_session, request.escrow_id)
    assert again.voting_start_date == request.voting_start_date

    trail = await escrow_service.get_audit_trail(db_session, request.escrow_id)
    assert [e.action for e in trail] == [EscrowAction.CREATED, EscrowAction.VOTING_STARTED]


@pytest.mark.asyncio
async def test_milestone_requests_vote_longer(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session, goal="1000.00")
    await donate(db_session, campaign.campaign_id, "500.00")
    (auto,) = await escrow_service.list_campaign_requests(db_session, campaign.campaign_id)

    started = await escrow_service.start_voting(db_session, auto.escrow_id)
    assert started.voting_end_date - started.voting_start_date == escrow_service.settings.milestone_voting_duration


@pytest.mark.asyncio
async def test_cancel_skips_approved_requests(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    request = await open_voting(db_session, campaign, "100.00")
    await compare_and_set_status(
        db_session, request.escrow_id, WithdrawalStatus.VOTING_IN_PROGRESS, WithdrawalStatus.VOTING_COMPLETED,
    )
    await compare_and_set_status(
        db_session, request.escrow_id, WithdrawalStatus.VOTING_COMPLETED, WithdrawalStatus.ADMIN_APPROVED,
    )
    await db_session.commit()

    assert await escrow_service.cancel_voting_phase_requests(db_session, campaign.campaign_id) == []


@pytest.mark.asyncio
async def test_unknown_request(db_session: AsyncSession) -> None:
    with pytest.raises(EscrowNotFound):
        await escrow_service.get_withdrawal_request(db_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_extend_requires_voting_in_progress(db_session: AsyncSession) -> None:
    campaign = await _funded_campaign(db_session)
    request = await escrow_service.create_withdrawal_request(
        db_session, campaign.campaign_id, Decimal("100.00"), REASON, campaign.creator_id,
    )
    with pytest.raises(IllegalTransition):
        await escrow_service.extend_voting(
            db_session, request.escrow_id, escrow_service.utcnow(), uuid.uuid4(),
        )
