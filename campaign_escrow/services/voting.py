"""Donation-weighted voting on withdrawal requests.

A donor's weight is their cumulative completed donation to the campaign at
the moment they (re)cast their vote. Re-casting replaces the previous vote;
only the latest value and weight count in the tally.
"""

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.database import utcnow
from campaign_escrow.errors import NotEligibleToVote, VotingWindowClosed
from campaign_escrow.models.escrow import WithdrawalStatus
from campaign_escrow.models.vote import Vote, VoteValue
from campaign_escrow.services import ledger
from campaign_escrow.services.escrow import get_escrow, illegal_transition

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
PERCENT_PLACES = Decimal("0.01")


@dataclass
class VoteTally:
    total_votes: int = 0
    approve_count: int = 0
    reject_count: int = 0
    total_approve_weight: Decimal = Decimal("0.00")
    total_reject_weight: Decimal = Decimal("0.00")
    approve_percentage: Decimal = Decimal("0.00")
    reject_percentage: Decimal = Decimal("0.00")

    def as_dict(self) -> dict:
        return {k: str(v) if isinstance(v, Decimal) else v for k, v in asdict(self).items()}


def _insert_for(db: AsyncSession):  # type: ignore[no-untyped-def]
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert
    return sqlite_insert


async def cast_vote(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    donor_id: uuid.UUID,
    value: VoteValue,
    now: datetime | None = None,
) -> Vote:
    """Cast or replace a donor's vote (upsert on escrow_id + donor_id)."""
    now = now or utcnow()
    # Lock the request so a concurrent close sees either this vote or none of it
    escrow = await get_escrow(db, escrow_id, for_update=True)

    if escrow.request_status != WithdrawalStatus.VOTING_IN_PROGRESS:
        raise illegal_transition(escrow, WithdrawalStatus.VOTING_IN_PROGRESS)
    if escrow.voting_end_date is None or now >= escrow.voting_end_date:
        raise VotingWindowClosed(
            "Voting window has ended",
            voting_end_date=escrow.voting_end_date.isoformat() if escrow.voting_end_date else None,
        )

    weight = await ledger.get_donor_contribution(db, escrow.campaign_id, donor_id)
    if weight <= 0:
        raise NotEligibleToVote(
            "Only donors with a completed donation to this campaign can vote",
            campaign_id=str(escrow.campaign_id),
        )

    insert = _insert_for(db)
    stmt = insert(Vote).values(
        vote_id=uuid.uuid4(),
        escrow_id=escrow_id,
        donor_id=donor_id,
        value=value,
        weight=weight,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["escrow_id", "donor_id"],
        set_={
            "value": stmt.excluded["value"],
            "weight": stmt.excluded["weight"],
            "updated_at": stmt.excluded["updated_at"],
        },
    )
    await db.execute(stmt)
    await db.commit()

    result = await db.execute(
        select(Vote)
        .where(Vote.escrow_id == escrow_id, Vote.donor_id == donor_id)
        .execution_options(populate_existing=True)
    )
    vote = result.scalar_one()
    logger.info(
        "Vote on %s by %s: %s (weight=%s)", escrow_id, donor_id, value.value, weight,
    )
    return vote


async def tally_votes(db: AsyncSession, escrow_id: uuid.UUID) -> VoteTally:
    result = await db.execute(
        select(Vote.value, func.count(), func.coalesce(func.sum(Vote.weight), 0))
        .where(Vote.escrow_id == escrow_id)
        .group_by(Vote.value)
    )
    tally = VoteTally()
    for value, count, weight in result.all():
        if value == VoteValue.APPROVE:
            tally.approve_count = count
            tally.total_approve_weight = ledger.to_money(weight)
        else:
            tally.reject_count = count
            tally.total_reject_weight = ledger.to_money(weight)

    tally.total_votes = tally.approve_count + tally.reject_count
    total_weight = tally.total_approve_weight + tally.total_reject_weight
    if total_weight > 0:
        tally.approve_percentage = (
            tally.total_approve_weight * HUNDRED / total_weight
        ).quantize(PERCENT_PLACES)
        tally.reject_percentage = HUNDRED - tally.approve_percentage
    return tally


def decide_outcome(tally: VoteTally, rule: str | None = None) -> WithdrawalStatus:
    """Status a closed voting window moves to.

    ``threshold``: approve weight below ``approval_threshold_percent`` (a
    window with no votes counts as 0%) ends as rejected_by_community.
    ``advisory``: always goes to admin review.
    """
    rule = rule or settings.voting_decision_rule
    if rule == "advisory":
        return WithdrawalStatus.VOTING_COMPLETED
    if tally.approve_percentage >= settings.approval_threshold_percent:
        return WithdrawalStatus.VOTING_COMPLETED
    return WithdrawalStatus.REJECTED_BY_COMMUNITY


async def list_votes(db: AsyncSession, escrow_id: uuid.UUID) -> list[Vote]:
    await get_escrow(db, escrow_id)
    result = await db.execute(
        select(Vote).where(Vote.escrow_id == escrow_id).order_by(Vote.created_at)
    )
    return list(result.scalars().all())
