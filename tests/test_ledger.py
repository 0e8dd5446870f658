"""Tests for the funding ledger: campaign projection, donations, balances, milestones."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.errors import CampaignNotActive, CampaignNotFound, DonationNotFound, InvalidAmount
from campaign_escrow.models.campaign import CampaignStatus, DonationStatus
from campaign_escrow.models.escrow import WithdrawalStatus
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import ledger
from campaign_escrow.services.escrow import crossed_milestone
from tests.conftest import donate, make_campaign, open_voting


@pytest.mark.asyncio
async def test_register_campaign_upserts_projection(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session, goal="1000.00")
    assert campaign.current_amount == Decimal("0.00")
    assert campaign.status == CampaignStatus.ACTIVE

    updated = await ledger.register_campaign(
        db_session, campaign.campaign_id, campaign.creator_id, Decimal("2500.00"), title="Renamed",
    )
    assert updated.campaign_id == campaign.campaign_id
    assert updated.goal_amount == Decimal("2500.00")
    assert updated.title == "Renamed"


@pytest.mark.asyncio
async def test_cancelled_campaign_cannot_be_reopened(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session, status=CampaignStatus.CANCELLED)
    again = await ledger.register_campaign(
        db_session, campaign.campaign_id, campaign.creator_id, campaign.goal_amount,
        status=CampaignStatus.ACTIVE,
    )
    assert again.status == CampaignStatus.CANCELLED


@pytest.mark.asyncio
async def test_get_unknown_campaign(db_session: AsyncSession) -> None:
    with pytest.raises(CampaignNotFound):
        await ledger.get_campaign(db_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_complete_donation_credits_campaign(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    donation = await ledger.record_donation(
        db_session, campaign.campaign_id, uuid.uuid4(), Decimal("250.00"),
    )
    assert donation.status == DonationStatus.PENDING

    await db_session.refresh(campaign)
    assert campaign.current_amount == Decimal("0.00")

    donation = await ledger.complete_donation(db_session, donation.donation_id)
    assert donation.status == DonationStatus.COMPLETED
    assert donation.completed_at is not None

    campaign = await ledger.get_campaign(db_session, campaign.campaign_id, for_update=True)
    assert campaign.current_amount == Decimal("250.00")
    assert campaign.total_raised == Decimal("250.00")


@pytest.mark.asyncio
async def test_complete_donation_twice_credits_once(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    donation = await donate(db_session, campaign.campaign_id, "100.00")
    await ledger.complete_donation(db_session, donation.donation_id)

    campaign = await ledger.get_campaign(db_session, campaign.campaign_id, for_update=True)
    assert campaign.current_amount == Decimal("100.00")


@pytest.mark.asyncio
async def test_complete_unknown_donation(db_session: AsyncSession) -> None:
    with pytest.raises(DonationNotFound):
        await ledger.complete_donation(db_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_donation_rules(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    with pytest.raises(InvalidAmount):
        await ledger.record_donation(db_session, campaign.campaign_id, uuid.uuid4(), Decimal("0"))

    draft = await make_campaign(db_session, status=CampaignStatus.DRAFT)
    with pytest.raises(CampaignNotActive):
        await ledger.record_donation(db_session, draft.campaign_id, uuid.uuid4(), Decimal("10.00"))


@pytest.mark.asyncio
async def test_donor_contribution_sums_completed_only(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    donor = uuid.uuid4()
    await donate(db_session, campaign.campaign_id, "100.00", donor)
    await donate(db_session, campaign.campaign_id, "50.50", donor)
    await ledger.record_donation(db_session, campaign.campaign_id, donor, Decimal("999.00"))
    await donate(db_session, campaign.campaign_id, "75.00")

    assert await ledger.get_donor_contribution(db_session, campaign.campaign_id, donor) == Decimal("150.50")
    assert await ledger.get_donor_contribution(db_session, campaign.campaign_id, uuid.uuid4()) == Decimal("0.00")


@pytest.mark.asyncio
async def test_eligible_voters_grouped_by_donor(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    small, large = uuid.uuid4(), uuid.uuid4()
    await donate(db_session, campaign.campaign_id, "40.00", small)
    await donate(db_session, campaign.campaign_id, "100.00", large)
    await donate(db_session, campaign.campaign_id, "25.00", large)
    # Pending donations carry no vote
    await ledger.record_donation(db_session, campaign.campaign_id, uuid.uuid4(), Decimal("500.00"))

    voters = await ledger.list_eligible_voters(db_session, campaign.campaign_id)
    assert [(v.donor_id, v.total_donated) for v in voters] == [
        (large, Decimal("125.00")),
        (small, Decimal("40.00")),
    ]

    empty = await make_campaign(db_session)
    assert await ledger.list_eligible_voters(db_session, empty.campaign_id) == []
    with pytest.raises(CampaignNotFound):
        await ledger.list_eligible_voters(db_session, uuid.uuid4())


@pytest.mark.asyncio
async def test_available_balance_excludes_in_flight_requests(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session)
    await donate(db_session, campaign.campaign_id, "1000.00")
    assert await ledger.get_available_balance(db_session, campaign.campaign_id) == Decimal("1000.00")

    await open_voting(db_session, campaign, "400.00")
    assert await ledger.get_available_balance(db_session, campaign.campaign_id) == Decimal("600.00")


# --- Milestones ---

def test_crossed_milestone_picks_highest() -> None:
    goal = Decimal("1000.00")
    assert crossed_milestone(goal, Decimal("0"), Decimal("499.99")) is None
    assert crossed_milestone(goal, Decimal("0"), Decimal("500.00")) == 50
    assert crossed_milestone(goal, Decimal("400"), Decimal("800")) == 75
    assert crossed_milestone(goal, Decimal("0"), Decimal("1200")) == 100
    assert crossed_milestone(goal, Decimal("500"), Decimal("700")) is None


@pytest.mark.asyncio
async def test_milestone_auto_creates_request(db_session: AsyncSession) -> None:
    """Scenario A: crossing 50% of a 10,000,000 goal auto-creates a request."""
    campaign = await make_campaign(db_session, goal="10000000.00")
    await donate(db_session, campaign.campaign_id, "4900000.00")
    assert await escrow_service.list_campaign_requests(db_session, campaign.campaign_id) == []

    await donate(db_session, campaign.campaign_id, "200000.00")

    requests = await escrow_service.list_campaign_requests(db_session, campaign.campaign_id)
    assert len(requests) == 1
    request = requests[0]
    assert request.auto_created is True
    assert request.milestone_percentage == 50
    assert request.withdrawal_request_amount == Decimal("5100000.00")
    assert request.requested_by == campaign.creator_id
    assert request.request_status == WithdrawalStatus.PENDING_VOTING


@pytest.mark.asyncio
async def test_higher_milestone_supersedes_lower_auto_request(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session, goal="10000000.00")
    await donate(db_session, campaign.campaign_id, "5000000.00")
    await donate(db_session, campaign.campaign_id, "2600000.00")

    requests = await escrow_service.list_campaign_requests(db_session, campaign.campaign_id)
    by_milestone = {r.milestone_percentage: r for r in requests}
    assert by_milestone[50].request_status == WithdrawalStatus.CANCELLED
    assert by_milestone[75].request_status == WithdrawalStatus.PENDING_VOTING
    assert by_milestone[75].withdrawal_request_amount == Decimal("7600000.00")


@pytest.mark.asyncio
async def test_milestone_skipped_while_manual_request_in_flight(db_session: AsyncSession) -> None:
    campaign = await make_campaign(db_session, goal="1000.00")
    await donate(db_session, campaign.campaign_id, "400.00")
    manual = await open_voting(db_session, campaign, "100.00")

    await donate(db_session, campaign.campaign_id, "200.00")

    requests = await escrow_service.list_campaign_requests(db_session, campaign.campaign_id)
    assert [r.escrow_id for r in requests] == [manual.escrow_id]
