"""Withdrawal request state machine: creation, voting start/extension, queries.

Status changes go through guarded compare-and-swap UPDATEs
(``... WHERE request_status = <expected>``) so that the API, the voting-window
consumer and the periodic sweep can race on the same request and exactly one
of them wins. Only the winner writes the audit entry and emits the event.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.database import utcnow
from campaign_escrow.errors import (
    AmountExceedsAvailable,
    CampaignNotActive,
    EscrowNotFound,
    Forbidden,
    IllegalTransition,
    InvalidAmount,
    InvalidVotingExtension,
    PendingRequestExists,
    ReasonTooShort,
    VotingWindowClosed,
)
from campaign_escrow.models.campaign import Campaign, CampaignStatus
from campaign_escrow.models.escrow import (
    NON_TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    VOTING_PHASE_STATUSES,
    EscrowAction,
    EscrowAuditLog,
    WithdrawalRequest,
    WithdrawalStatus,
)
from campaign_escrow.services import ledger
from campaign_escrow.services.webhooks import notify_escrow_event

logger = logging.getLogger(__name__)


async def _log_audit(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    action: EscrowAction,
    amount: Decimal,
    actor_id: uuid.UUID | None = None,
    from_status: WithdrawalStatus | None = None,
    to_status: WithdrawalStatus | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log."""
    entry = EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        escrow_id=escrow_id,
        action=action,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        actor_id=actor_id,
        amount=amount,
        metadata_=metadata,
    )
    db.add(entry)


def illegal_transition(
    escrow: WithdrawalRequest, *expected: WithdrawalStatus
) -> IllegalTransition:
    expected_values = [s.value for s in expected]
    return IllegalTransition(
        f"Withdrawal request is {escrow.request_status.value}, "
        f"expected {' or '.join(expected_values)}",
        escrow_id=str(escrow.escrow_id),
        current_status=escrow.request_status.value,
        expected_status=expected_values,
    )


async def compare_and_set_status(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    expected: WithdrawalStatus,
    target: WithdrawalStatus,
    *criteria,
    **values,
) -> bool:
    """Guarded transition. True only for the caller whose UPDATE matched.

    Does not commit; the caller writes its side effects in the same
    transaction and commits.
    """
    if target not in VALID_TRANSITIONS[expected]:
        raise ValueError(f"{expected.value} -> {target.value} is not a valid transition")
    result = await db.execute(
        update(WithdrawalRequest)
        .where(
            WithdrawalRequest.escrow_id == escrow_id,
            WithdrawalRequest.request_status == expected,
            *criteria,
        )
        .values(request_status=target, updated_at=utcnow(), **values)
    )
    return result.rowcount == 1


async def get_escrow(
    db: AsyncSession, escrow_id: uuid.UUID, *, for_update: bool = False
) -> WithdrawalRequest:
    query = select(WithdrawalRequest).where(WithdrawalRequest.escrow_id == escrow_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    escrow = result.scalar_one_or_none()
    if escrow is None:
        raise EscrowNotFound("Withdrawal request not found", escrow_id=str(escrow_id))
    return escrow


async def _find_active_request(
    db: AsyncSession, campaign_id: uuid.UUID
) -> WithdrawalRequest | None:
    result = await db.execute(
        select(WithdrawalRequest).where(
            WithdrawalRequest.campaign_id == campaign_id,
            WithdrawalRequest.request_status.in_(NON_TERMINAL_STATUSES),
        )
    )
    return result.scalars().first()


async def _insert_request(
    db: AsyncSession,
    campaign: Campaign,
    amount: Decimal,
    reason: str,
    requested_by: uuid.UUID,
    *,
    auto_created: bool = False,
    milestone_percentage: int | None = None,
) -> WithdrawalRequest:
    campaign_id = campaign.campaign_id
    escrow = WithdrawalRequest(
        escrow_id=uuid.uuid4(),
        campaign_id=campaign.campaign_id,
        requested_by=requested_by,
        withdrawal_request_amount=amount,
        request_reason=reason,
        request_status=WithdrawalStatus.PENDING_VOTING,
        auto_created=auto_created,
        milestone_percentage=milestone_percentage,
    )
    db.add(escrow)
    try:
        await db.flush()
    except IntegrityError:
        # Lost a race with a concurrent create; the partial unique index fired
        await db.rollback()
        raise PendingRequestExists(
            "Campaign already has a withdrawal request in progress",
            campaign_id=str(campaign_id),
        )

    await _log_audit(
        db, escrow.escrow_id, EscrowAction.CREATED, amount, requested_by,
        to_status=WithdrawalStatus.PENDING_VOTING,
        metadata={"auto_created": auto_created, "milestone_percentage": milestone_percentage},
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise PendingRequestExists(
            "Campaign already has a withdrawal request in progress",
            campaign_id=str(campaign_id),
        )
    await db.refresh(escrow)

    logger.info(
        "Withdrawal request %s created: campaign=%s amount=%s auto=%s",
        escrow.escrow_id, campaign_id, amount, auto_created,
    )

    from campaign_escrow.services.voting_window import schedule_voting_start
    await schedule_voting_start(
        escrow.escrow_id,
        escrow.created_at + timedelta(seconds=settings.voting_start_delay_seconds),
    )
    await notify_escrow_event(db, escrow, "withdrawal.created", {
        "auto_created": auto_created,
        "milestone_percentage": milestone_percentage,
    })
    return escrow


async def create_withdrawal_request(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    amount: Decimal,
    reason: str,
    requested_by: uuid.UUID,
) -> WithdrawalRequest:
    """Creator asks to withdraw part of the held funds."""
    campaign = await ledger.get_campaign(db, campaign_id)
    if campaign.creator_id != requested_by:
        raise Forbidden("Only the campaign creator can request a withdrawal")
    if campaign.status != CampaignStatus.ACTIVE:
        raise CampaignNotActive(
            "Withdrawals can only be requested for active campaigns",
            campaign_status=campaign.status.value,
        )
    if amount <= 0:
        raise InvalidAmount("Withdrawal amount must be positive", amount=str(amount))

    reason = (reason or "").strip()
    if len(reason) < settings.min_reason_length:
        raise ReasonTooShort(
            f"Reason must be at least {settings.min_reason_length} characters",
            min_length=settings.min_reason_length,
        )

    active = await _find_active_request(db, campaign_id)
    if active is not None:
        raise PendingRequestExists(
            "Campaign already has a withdrawal request in progress",
            campaign_id=str(campaign_id),
            escrow_id=str(active.escrow_id),
            request_status=active.request_status.value,
        )

    available = await ledger.get_available_balance(db, campaign_id)
    if amount > available:
        raise AmountExceedsAvailable(
            f"Requested {amount} exceeds available balance {available}",
            amount=str(amount),
            available=str(available),
        )

    return await _insert_request(db, campaign, amount, reason, requested_by)


def crossed_milestone(
    goal_amount: Decimal, previous_total: Decimal, new_total: Decimal
) -> int | None:
    """Highest configured milestone crossed by moving from previous_total to new_total."""
    crossed = [
        pct for pct in settings.milestone_percentages
        if previous_total < goal_amount * pct / 100 <= new_total
    ]
    return max(crossed) if crossed else None


async def create_milestone_request(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    previous_total: Decimal,
    new_total: Decimal,
) -> WithdrawalRequest | None:
    """Auto-create a withdrawal request when funding crosses a milestone.

    Lower-milestone auto requests still in a voting phase are cancelled first.
    Skipped (and logged) when a manual or approved request is in flight or
    nothing is available.
    """
    campaign = await ledger.get_campaign(db, campaign_id)
    milestone = crossed_milestone(campaign.goal_amount, previous_total, new_total)
    if milestone is None:
        return None

    superseded = await cancel_voting_phase_requests(
        db, campaign_id, auto_created_below=milestone,
    )
    if superseded:
        logger.info(
            "Milestone %s%% superseded %d lower milestone request(s) for campaign %s",
            milestone, len(superseded), campaign_id,
        )

    active = await _find_active_request(db, campaign_id)
    if active is not None:
        logger.info(
            "Milestone %s%% reached for campaign %s but request %s is %s, skipping",
            milestone, campaign_id, active.escrow_id, active.request_status.value,
        )
        return None

    available = await ledger.get_available_balance(db, campaign_id)
    if available <= 0:
        logger.info(
            "Milestone %s%% reached for campaign %s with nothing available (%s), skipping",
            milestone, campaign_id, available,
        )
        return None

    reason = f"Automatic withdrawal request: campaign reached {milestone}% of its goal"
    try:
        return await _insert_request(
            db, campaign, available, reason, campaign.creator_id,
            auto_created=True, milestone_percentage=milestone,
        )
    except PendingRequestExists:
        logger.info("Milestone request for campaign %s lost a race, skipping", campaign_id)
        return None


def voting_duration_for(escrow: WithdrawalRequest) -> timedelta:
    if escrow.auto_created:
        return settings.milestone_voting_duration
    return settings.voting_duration


async def start_voting(
    db: AsyncSession, escrow_id: uuid.UUID, now: datetime | None = None
) -> WithdrawalRequest:
    """Open the voting window. A request that already left pending_voting is returned untouched."""
    now = now or utcnow()
    escrow = await get_escrow(db, escrow_id)
    if escrow.request_status != WithdrawalStatus.PENDING_VOTING:
        logger.info(
            "Voting for %s not started: already %s", escrow_id, escrow.request_status.value,
        )
        return escrow

    end = now + voting_duration_for(escrow)
    won = await compare_and_set_status(
        db, escrow_id, WithdrawalStatus.PENDING_VOTING, WithdrawalStatus.VOTING_IN_PROGRESS,
        voting_start_date=now, voting_end_date=end,
    )
    if not won:
        await db.rollback()
        return await get_escrow(db, escrow_id)

    await _log_audit(
        db, escrow_id, EscrowAction.VOTING_STARTED, escrow.withdrawal_request_amount,
        from_status=WithdrawalStatus.PENDING_VOTING,
        to_status=WithdrawalStatus.VOTING_IN_PROGRESS,
        metadata={"voting_end_date": end.isoformat()},
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info("Voting started for %s, closes at %s", escrow_id, end.isoformat())

    from campaign_escrow.services.voting_window import schedule_voting_close
    await schedule_voting_close(escrow_id, end)
    await notify_escrow_event(db, escrow, "voting.started", {
        "voting_start_date": now,
        "voting_end_date": end,
    })
    return escrow


async def extend_voting(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    new_end_date: datetime,
    admin_id: uuid.UUID,
    now: datetime | None = None,
) -> WithdrawalRequest:
    """Push the window's end later. Votes already cast are kept."""
    now = now or utcnow()
    escrow = await get_escrow(db, escrow_id, for_update=True)

    if escrow.request_status != WithdrawalStatus.VOTING_IN_PROGRESS:
        raise illegal_transition(escrow, WithdrawalStatus.VOTING_IN_PROGRESS)
    if now >= escrow.voting_end_date:
        raise VotingWindowClosed(
            "Voting window has already ended",
            voting_end_date=escrow.voting_end_date.isoformat(),
        )
    if new_end_date <= escrow.voting_end_date:
        raise InvalidVotingExtension(
            "New end date must be later than the current end date",
            voting_end_date=escrow.voting_end_date.isoformat(),
            new_end_date=new_end_date.isoformat(),
        )

    previous_end = escrow.voting_end_date
    escrow.voting_end_date = new_end_date
    escrow.voting_extended_count += 1
    escrow.voting_extended_by = admin_id
    escrow.last_extended_at = now

    await _log_audit(
        db, escrow_id, EscrowAction.VOTING_EXTENDED, escrow.withdrawal_request_amount, admin_id,
        metadata={
            "previous_end_date": previous_end.isoformat(),
            "new_end_date": new_end_date.isoformat(),
            "extension_number": escrow.voting_extended_count,
        },
    )
    await db.commit()
    await db.refresh(escrow)
    logger.info(
        "Voting for %s extended by %s to %s", escrow_id, admin_id, new_end_date.isoformat(),
    )

    from campaign_escrow.services.voting_window import schedule_voting_close
    await schedule_voting_close(escrow_id, new_end_date)
    await notify_escrow_event(db, escrow, "voting.extended", {
        "previous_end_date": previous_end,
        "voting_end_date": new_end_date,
    })
    return escrow


async def cancel_voting_phase_requests(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    *,
    actor_id: uuid.UUID | None = None,
    exclude: uuid.UUID | None = None,
    auto_created_below: int | None = None,
) -> list[WithdrawalRequest]:
    """Cancel a campaign's requests that have not reached an admin approval.

    ``auto_created_below`` restricts the cancellation to milestone requests
    for a lower milestone.
    """
    query = select(WithdrawalRequest).where(
        WithdrawalRequest.campaign_id == campaign_id,
        WithdrawalRequest.request_status.in_(VOTING_PHASE_STATUSES),
    )
    if exclude is not None:
        query = query.where(WithdrawalRequest.escrow_id != exclude)
    if auto_created_below is not None:
        query = query.where(
            WithdrawalRequest.auto_created.is_(True),
            WithdrawalRequest.milestone_percentage < auto_created_below,
        )
    result = await db.execute(query)
    candidates = list(result.scalars().all())

    now = utcnow()
    cancelled: list[tuple[WithdrawalRequest, WithdrawalStatus]] = []
    for escrow in candidates:
        previous = escrow.request_status
        won = await compare_and_set_status(
            db, escrow.escrow_id, previous, WithdrawalStatus.CANCELLED, cancelled_at=now,
        )
        if not won:
            continue
        await _log_audit(
            db, escrow.escrow_id, EscrowAction.CANCELLED, escrow.withdrawal_request_amount,
            actor_id, from_status=previous, to_status=WithdrawalStatus.CANCELLED,
            metadata={"superseded_by_milestone": auto_created_below} if auto_created_below else None,
        )
        cancelled.append((escrow, previous))

    if not cancelled:
        return []

    await db.commit()

    from campaign_escrow.services.voting_window import cancel_scheduled_window
    for escrow, previous in cancelled:
        await db.refresh(escrow)
        await cancel_scheduled_window(escrow.escrow_id)
        logger.info("Withdrawal request %s cancelled (was %s)", escrow.escrow_id, previous.value)
    return [escrow for escrow, _ in cancelled]


async def get_withdrawal_request(
    db: AsyncSession, escrow_id: uuid.UUID, now: datetime | None = None
) -> WithdrawalRequest:
    """Fetch a request, closing its voting window first if it has elapsed."""
    now = now or utcnow()
    escrow = await get_escrow(db, escrow_id)
    if (
        escrow.request_status == WithdrawalStatus.VOTING_IN_PROGRESS
        and escrow.voting_end_date is not None
        and escrow.voting_end_date <= now
    ):
        from campaign_escrow.services.voting_window import close_voting_window
        await close_voting_window(db, escrow_id, now)
        await db.refresh(escrow)
    return escrow


async def list_campaign_requests(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    status: WithdrawalStatus | None = None,
) -> list[WithdrawalRequest]:
    await ledger.get_campaign(db, campaign_id)
    query = (
        select(WithdrawalRequest)
        .where(WithdrawalRequest.campaign_id == campaign_id)
        .order_by(WithdrawalRequest.created_at.desc())
    )
    if status is not None:
        query = query.where(WithdrawalRequest.request_status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_audit_trail(
    db: AsyncSession, escrow_id: uuid.UUID
) -> list[EscrowAuditLog]:
    result = await db.execute(
        select(EscrowAuditLog)
        .where(EscrowAuditLog.escrow_id == escrow_id)
        .order_by(EscrowAuditLog.timestamp)
    )
    return list(result.scalars().all())
