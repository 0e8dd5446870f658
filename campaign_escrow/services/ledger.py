"""Campaign funding ledger: campaign projection, donations, balance queries.

``current_amount`` is what the platform holds right now (it drops when a
withdrawal is released or a refund is paid). ``total_raised`` only grows and
is the base for milestone detection.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.database import utcnow
from campaign_escrow.errors import CampaignNotActive, CampaignNotFound, DonationNotFound, InvalidAmount
from campaign_escrow.models.campaign import Campaign, CampaignStatus, DonationRecord, DonationStatus
from campaign_escrow.models.escrow import NON_TERMINAL_STATUSES, WithdrawalRequest, WithdrawalStatus

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
CENT = Decimal("0.01")


def to_money(value: object) -> Decimal:
    """Normalize a DB aggregate (Decimal, int or float) to a 2-place Decimal."""
    return Decimal(str(value)).quantize(CENT)


async def get_campaign(
    db: AsyncSession, campaign_id: uuid.UUID, *, for_update: bool = False
) -> Campaign:
    query = select(Campaign).where(Campaign.campaign_id == campaign_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    campaign = result.scalar_one_or_none()
    if campaign is None:
        raise CampaignNotFound("Campaign not found", campaign_id=str(campaign_id))
    return campaign


async def register_campaign(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    creator_id: uuid.UUID,
    goal_amount: Decimal,
    title: str = "",
    status: CampaignStatus = CampaignStatus.ACTIVE,
) -> Campaign:
    """Insert or refresh the campaign projection.

    A campaign cancelled here stays cancelled: the Campaign Service cannot
    re-open it through the projection.
    """
    result = await db.execute(
        select(Campaign)
        .where(Campaign.campaign_id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    campaign = result.scalar_one_or_none()

    if campaign is None:
        campaign = Campaign(
            campaign_id=campaign_id,
            creator_id=creator_id,
            title=title,
            goal_amount=goal_amount,
            current_amount=ZERO,
            total_raised=ZERO,
            status=status,
        )
        db.add(campaign)
        logger.info("Registered campaign %s (goal=%s)", campaign_id, goal_amount)
    else:
        campaign.title = title
        campaign.goal_amount = goal_amount
        if campaign.status != CampaignStatus.CANCELLED:
            campaign.status = status
            if status == CampaignStatus.CANCELLED:
                campaign.cancelled_at = utcnow()

    await db.commit()
    await db.refresh(campaign)
    return campaign


async def record_donation(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    donor_id: uuid.UUID,
    amount: Decimal,
) -> DonationRecord:
    """Record a donation awaiting payment confirmation."""
    if amount <= 0:
        raise InvalidAmount("Donation amount must be positive", amount=str(amount))

    campaign = await get_campaign(db, campaign_id)
    if campaign.status != CampaignStatus.ACTIVE:
        raise CampaignNotActive(
            "Donations are only accepted for active campaigns",
            campaign_status=campaign.status.value,
        )

    donation = DonationRecord(
        donation_id=uuid.uuid4(),
        campaign_id=campaign_id,
        donor_id=donor_id,
        amount=amount,
        status=DonationStatus.PENDING,
    )
    db.add(donation)
    await db.commit()
    await db.refresh(donation)
    return donation


async def complete_donation(db: AsyncSession, donation_id: uuid.UUID) -> DonationRecord:
    """Mark a donation paid and credit the campaign. Safe to call twice.

    Crossing a funding milestone auto-creates a withdrawal request.
    """
    result = await db.execute(
        select(DonationRecord)
        .where(DonationRecord.donation_id == donation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    donation = result.scalar_one_or_none()
    if donation is None:
        raise DonationNotFound("Donation not found", donation_id=str(donation_id))

    if donation.status != DonationStatus.PENDING:
        logger.info("Donation %s already %s, skipping", donation_id, donation.status.value)
        return donation

    campaign = await get_campaign(db, donation.campaign_id, for_update=True)
    previous_total = campaign.total_raised

    donation.status = DonationStatus.COMPLETED
    donation.completed_at = utcnow()
    campaign.current_amount = campaign.current_amount + donation.amount
    campaign.total_raised = campaign.total_raised + donation.amount
    new_total = campaign.total_raised
    is_active = campaign.status == CampaignStatus.ACTIVE

    await db.commit()
    await db.refresh(donation)

    logger.info(
        "Donation %s completed: campaign=%s amount=%s total_raised=%s",
        donation_id, donation.campaign_id, donation.amount, new_total,
    )

    if is_active:
        from campaign_escrow.services.escrow import create_milestone_request
        await create_milestone_request(db, donation.campaign_id, previous_total, new_total)
        await db.refresh(donation)

    return donation


async def get_available_balance(db: AsyncSession, campaign_id: uuid.UUID) -> Decimal:
    """Held funds not yet claimed by an in-flight withdrawal request."""
    campaign = await get_campaign(db, campaign_id)
    result = await db.execute(
        select(func.coalesce(func.sum(WithdrawalRequest.withdrawal_request_amount), 0))
        .where(
            WithdrawalRequest.campaign_id == campaign_id,
            WithdrawalRequest.request_status.in_(NON_TERMINAL_STATUSES),
        )
    )
    reserved = to_money(result.scalar_one())
    return campaign.current_amount - reserved


async def get_donor_contribution(
    db: AsyncSession, campaign_id: uuid.UUID, donor_id: uuid.UUID
) -> Decimal:
    """Cumulative completed donations of one donor to one campaign."""
    result = await db.execute(
        select(func.coalesce(func.sum(DonationRecord.amount), 0)).where(
            DonationRecord.campaign_id == campaign_id,
            DonationRecord.donor_id == donor_id,
            DonationRecord.status == DonationStatus.COMPLETED,
        )
    )
    return to_money(result.scalar_one())


@dataclass
class EligibleVoter:
    donor_id: uuid.UUID
    total_donated: Decimal


async def list_eligible_voters(db: AsyncSession, campaign_id: uuid.UUID) -> list[EligibleVoter]:
    """Donors with completed donations to a campaign, largest contributor first."""
    await get_campaign(db, campaign_id)
    total = func.sum(DonationRecord.amount)
    result = await db.execute(
        select(DonationRecord.donor_id, total)
        .where(
            DonationRecord.campaign_id == campaign_id,
            DonationRecord.status == DonationStatus.COMPLETED,
        )
        .group_by(DonationRecord.donor_id)
        .order_by(total.desc(), DonationRecord.donor_id)
    )
    return [EligibleVoter(donor_id=row[0], total_donated=to_money(row[1])) for row in result.all()]


async def get_total_released(db: AsyncSession, campaign_id: uuid.UUID) -> Decimal:
    result = await db.execute(
        select(func.coalesce(func.sum(WithdrawalRequest.withdrawal_request_amount), 0))
        .where(
            WithdrawalRequest.campaign_id == campaign_id,
            WithdrawalRequest.request_status == WithdrawalStatus.RELEASED,
        )
    )
    return to_money(result.scalar_one())


async def list_completed_donations(
    db: AsyncSession, campaign_id: uuid.UUID
) -> list[DonationRecord]:
    """Completed donations in creation order."""
    result = await db.execute(
        select(DonationRecord)
        .where(
            DonationRecord.campaign_id == campaign_id,
            DonationRecord.status == DonationStatus.COMPLETED,
        )
        .order_by(DonationRecord.created_at, DonationRecord.donation_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
