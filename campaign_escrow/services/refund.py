"""Proportional refunds for cancelled campaigns, and recovery from the creator.

When a campaign is cancelled the platform refunds what it still holds,
split across completed donations in proportion to their amount:

    refund_ratio    = min(1, recoverable / total completed donations)
    refunded_amount = floor(amount * refund_ratio, 2 places)

The part of a donation that was already released to the creator is tracked
as a ``recovery`` refund case and paid out as the creator returns money
through the campaign's RecoveryCase.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.database import utcnow
from campaign_escrow.errors import (
    CampaignNotCancelled,
    IllegalTransition,
    InvalidAmount,
    PaymentGatewayError,
    RecoveryCaseNotFound,
    RefundNotFound,
)
from campaign_escrow.models.campaign import CampaignStatus, DonationStatus
from campaign_escrow.models.payment import PaymentTransfer, TransferKind, TransferStatus
from campaign_escrow.models.refund import (
    RecoveryCase,
    RecoveryStatus,
    RefundCase,
    RefundMethod,
    RefundStatus,
)
from campaign_escrow.services import ledger
from campaign_escrow.services.transfers import (
    get_or_create_transfer,
    mark_transfer_succeeded,
    send_transfer,
)
from campaign_escrow.services.webhooks import notify

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
RATIO_PLACES = Decimal("0.0000000001")
ZERO = Decimal("0.00")


@dataclass
class RefundBatch:
    campaign_id: uuid.UUID
    refund_ratio: Decimal
    total_refunded: Decimal = ZERO
    refund_cases: list[RefundCase] = field(default_factory=list)


def floor_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_DOWN)


def compute_refund_ratio(recoverable: Decimal, base: Decimal) -> Decimal:
    if base <= 0 or recoverable <= 0:
        return Decimal("0")
    return min(Decimal("1"), recoverable / base).quantize(RATIO_PLACES, rounding=ROUND_DOWN)


async def _unpaid_escrow_refunds(db: AsyncSession, campaign_id: uuid.UUID) -> Decimal:
    """Escrow-method refunds already promised but not yet paid out."""
    result = await db.execute(
        select(func.coalesce(func.sum(RefundCase.refunded_amount - RefundCase.paid_amount), 0))
        .where(
            RefundCase.campaign_id == campaign_id,
            RefundCase.refund_method == RefundMethod.ESCROW,
        )
    )
    return ledger.to_money(result.scalar_one())


async def calculate_proportional_refunds(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    actor_id: uuid.UUID | None = None,
) -> RefundBatch:
    """Create refund cases for every completed donation of a cancelled campaign.

    Only donations still ``completed`` are processed, so a re-run after a
    partial failure picks up where the last one stopped.
    """
    campaign = await ledger.get_campaign(db, campaign_id, for_update=True)
    if campaign.status != CampaignStatus.CANCELLED:
        raise CampaignNotCancelled(
            "Refunds can only be calculated for cancelled campaigns",
            campaign_status=campaign.status.value,
        )

    donations = await ledger.list_completed_donations(db, campaign_id)
    base = sum((d.amount for d in donations), ZERO)
    recoverable = campaign.current_amount - await _unpaid_escrow_refunds(db, campaign_id)
    ratio = compute_refund_ratio(recoverable, base)
    batch = RefundBatch(campaign_id=campaign_id, refund_ratio=ratio)

    if not donations:
        logger.info("No completed donations to refund for campaign %s", campaign_id)
        return batch

    released = await ledger.get_total_released(db, campaign_id)
    remaining_recoverable = max(recoverable, ZERO)
    now = utcnow()

    for donation in donations:
        refunded = min(floor_cents(donation.amount * ratio), remaining_recoverable)
        remaining_recoverable -= refunded
        remaining = donation.amount - refunded

        if refunded > 0:
            case = RefundCase(
                refund_id=uuid.uuid4(),
                campaign_id=campaign_id,
                donor_id=donation.donor_id,
                donation_id=donation.donation_id,
                original_amount=donation.amount,
                refunded_amount=refunded,
                paid_amount=ZERO,
                refund_ratio=ratio,
                remaining_refund=remaining,
                refund_status=RefundStatus.PENDING,
                refund_method=RefundMethod.ESCROW,
                created_by=actor_id,
            )
            db.add(case)
            batch.refund_cases.append(case)

        if remaining > 0 and released > 0:
            db.add(RefundCase(
                refund_id=uuid.uuid4(),
                campaign_id=campaign_id,
                donor_id=donation.donor_id,
                donation_id=donation.donation_id,
                original_amount=donation.amount,
                refunded_amount=ZERO,
                paid_amount=ZERO,
                refund_ratio=ratio,
                remaining_refund=remaining,
                refund_status=RefundStatus.PENDING,
                refund_method=RefundMethod.RECOVERY,
                created_by=actor_id,
                notes="Owed from funds already released to the campaign creator",
            ))

        donation.status = (
            DonationStatus.REFUNDED if remaining == 0 else DonationStatus.PARTIALLY_REFUNDED
        )
        donation.refunded_at = now
        batch.total_refunded += refunded

    await db.commit()
    for case in batch.refund_cases:
        await db.refresh(case)

    logger.info(
        "Refunds for campaign %s: %d donation(s), base=%s recoverable=%s ratio=%s refunded=%s",
        campaign_id, len(donations), base, recoverable, ratio, batch.total_refunded,
    )
    return batch


async def get_refund(db: AsyncSession, refund_id: uuid.UUID, *, for_update: bool = False) -> RefundCase:
    query = select(RefundCase).where(RefundCase.refund_id == refund_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    case = result.scalar_one_or_none()
    if case is None:
        raise RefundNotFound("Refund case not found", refund_id=str(refund_id))
    return case


async def list_refunds(db: AsyncSession, campaign_id: uuid.UUID) -> list[RefundCase]:
    await ledger.get_campaign(db, campaign_id)
    result = await db.execute(
        select(RefundCase)
        .where(RefundCase.campaign_id == campaign_id)
        .order_by(RefundCase.created_at, RefundCase.refund_method)
    )
    return list(result.scalars().all())


def refund_idempotency_key(case: RefundCase) -> str:
    if case.refund_method == RefundMethod.ESCROW:
        return f"refund:{case.refund_id}"
    # Recovery cases are paid in several allocations; the cumulative target keys each one
    return f"refund:{case.refund_id}:{case.refunded_amount}"


async def _unsettled_transfers(db: AsyncSession, refund_id: uuid.UUID) -> list[PaymentTransfer]:
    """Transfers for a case that were created but not yet confirmed (pending or failed)."""
    result = await db.execute(
        select(PaymentTransfer)
        .where(
            PaymentTransfer.kind == TransferKind.REFUND,
            PaymentTransfer.reference_id == refund_id,
            PaymentTransfer.status != TransferStatus.SUCCEEDED,
        )
        .order_by(PaymentTransfer.created_at)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def process_refund(db: AsyncSession, refund_id: uuid.UUID) -> RefundCase:
    """Pay out the allocated, unpaid part of one refund case.

    Earlier transfers that are still unconfirmed are re-driven under their own
    keys; only the part of ``refunded_amount`` not yet paid or in flight goes
    into a new transfer. Raises PaymentGatewayError after marking the case
    ``failed``.
    """
    case = await get_refund(db, refund_id)
    if case.refunded_amount - case.paid_amount <= 0:
        return case

    transfers = await _unsettled_transfers(db, refund_id)
    in_flight = sum((t.amount for t in transfers), ZERO)
    new_amount = case.refunded_amount - case.paid_amount - in_flight
    if new_amount > 0:
        transfer = await get_or_create_transfer(
            db,
            refund_idempotency_key(case),
            TransferKind.REFUND,
            case.refund_id,
            case.donor_id,
            new_amount,
        )
        if transfer not in transfers:
            transfers.append(transfer)

    for transfer in transfers:
        try:
            confirmed = await send_transfer(db, transfer, f"refund:{case.refund_id}")
        except PaymentGatewayError as e:
            await mark_refund_failed(db, refund_id, e.message)
            raise
        if confirmed:
            await settle_refund_payout(db, transfer, transfer.gateway_transaction_id)

    await db.refresh(case)
    return case


async def settle_refund_payout(
    db: AsyncSession, transfer: PaymentTransfer, transaction_id: str | None
) -> bool:
    """Apply a confirmed refund transfer to its case exactly once."""
    won = await mark_transfer_succeeded(db, transfer.transfer_id, transaction_id)
    if not won:
        await db.rollback()
        return False

    case = await get_refund(db, transfer.reference_id, for_update=True)
    now = utcnow()
    case.paid_amount = case.paid_amount + transfer.amount
    case.refund_transaction_id = transaction_id
    case.refunded_at = now
    case.last_error = None
    if case.remaining_refund > 0:
        case.refund_status = RefundStatus.PARTIAL
    elif case.paid_amount >= case.refunded_amount:
        case.refund_status = RefundStatus.COMPLETED
    else:
        case.refund_status = RefundStatus.PENDING

    if case.refund_method == RefundMethod.ESCROW:
        campaign = await ledger.get_campaign(db, case.campaign_id, for_update=True)
        campaign.current_amount = campaign.current_amount - transfer.amount

    await db.commit()
    await db.refresh(case)
    logger.info(
        "Refund %s paid: amount=%s method=%s status=%s",
        case.refund_id, transfer.amount, case.refund_method.value, case.refund_status.value,
    )
    await notify(db, "refund.issued", case.donor_id, {
        "refund_id": case.refund_id,
        "campaign_id": case.campaign_id,
        "donation_id": case.donation_id,
        "amount": transfer.amount,
        "refund_method": case.refund_method.value,
        "refund_status": case.refund_status.value,
    })
    return True


async def mark_refund_failed(db: AsyncSession, refund_id: uuid.UUID, error: str) -> RefundCase:
    case = await get_refund(db, refund_id, for_update=True)
    if case.refund_status != RefundStatus.COMPLETED:
        case.refund_status = RefundStatus.FAILED
        case.last_error = error[:1000]
        await db.commit()
        await db.refresh(case)
        logger.error("Refund %s failed: %s", refund_id, error)
    return case


async def process_campaign_refunds(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    *,
    only_failed: bool = False,
) -> list[RefundCase]:
    """Pay out every refund case of a campaign with an allocated, unpaid amount.

    Each case succeeds or fails on its own; failures stay ``failed`` for a
    later retry.
    """
    statuses = [RefundStatus.FAILED] if only_failed else [RefundStatus.PENDING, RefundStatus.FAILED]
    result = await db.execute(
        select(RefundCase.refund_id)
        .where(
            RefundCase.campaign_id == campaign_id,
            RefundCase.refund_status.in_(statuses),
            RefundCase.refunded_amount > RefundCase.paid_amount,
        )
        .order_by(RefundCase.created_at)
    )
    refund_ids = list(result.scalars().all())

    processed = []
    failures = 0
    for refund_id in refund_ids:
        try:
            processed.append(await process_refund(db, refund_id))
        except PaymentGatewayError:
            failures += 1
            processed.append(await get_refund(db, refund_id))

    logger.info(
        "Refund payouts for campaign %s: %d processed, %d failed",
        campaign_id, len(processed) - failures, failures,
    )
    return processed


async def retry_failed_refunds(db: AsyncSession, campaign_id: uuid.UUID) -> list[RefundCase]:
    return await process_campaign_refunds(db, campaign_id, only_failed=True)


async def process_campaign_refunds_task(campaign_id: uuid.UUID, session_factory=None) -> None:  # type: ignore[no-untyped-def]
    """Background task wrapper around process_campaign_refunds."""
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    try:
        async with session_factory() as db:
            await process_campaign_refunds(db, campaign_id)
    except Exception:
        logger.exception("Refund payouts for campaign %s failed", campaign_id)


# ---------------------------------------------------------------------------
# Recovery from the creator
# ---------------------------------------------------------------------------


# Statuses in which the creator can still return money
RECOVERY_OPEN_STATUSES = (
    RecoveryStatus.PENDING,
    RecoveryStatus.IN_PROGRESS,
    RecoveryStatus.LEGAL_ACTION,
)
ESCALATABLE_STATUSES = (
    RecoveryStatus.PENDING,
    RecoveryStatus.IN_PROGRESS,
    RecoveryStatus.FAILED,
)


def _timeline_entry(event: str, amount: Decimal | None = None, **extra) -> dict:
    entry = {"event": event, "at": utcnow().isoformat(), **extra}
    if amount is not None:
        entry["amount"] = str(amount)
    return entry


async def get_recovery_case(db: AsyncSession, campaign_id: uuid.UUID) -> RecoveryCase:
    result = await db.execute(
        select(RecoveryCase).where(RecoveryCase.campaign_id == campaign_id)
    )
    case = result.scalar_one_or_none()
    if case is None:
        raise RecoveryCaseNotFound("No recovery case for this campaign", campaign_id=str(campaign_id))
    return case


async def list_recovery_cases_by_creator(
    db: AsyncSession, creator_id: uuid.UUID
) -> list[RecoveryCase]:
    """Every recovery case opened against one creator, newest first."""
    result = await db.execute(
        select(RecoveryCase)
        .where(RecoveryCase.creator_id == creator_id)
        .order_by(RecoveryCase.created_at.desc(), RecoveryCase.recovery_case_id)
    )
    return list(result.scalars().all())


async def create_recovery_case(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    created_by: uuid.UUID | None = None,
) -> RecoveryCase | None:
    """Open a case to reclaim funds already released to the creator. Idempotent."""
    result = await db.execute(
        select(RecoveryCase).where(RecoveryCase.campaign_id == campaign_id)
    )
    existing = result.scalar_one_or_none()
    if existing is not None:
        return existing

    released = await ledger.get_total_released(db, campaign_id)
    if released <= 0:
        return None

    campaign = await ledger.get_campaign(db, campaign_id)
    case = RecoveryCase(
        recovery_case_id=uuid.uuid4(),
        campaign_id=campaign_id,
        creator_id=campaign.creator_id,
        total_amount=released,
        recovered_amount=ZERO,
        distributed_amount=ZERO,
        status=RecoveryStatus.PENDING,
        deadline=utcnow() + timedelta(days=settings.recovery_deadline_days),
        timeline=[_timeline_entry("opened", released)],
        created_by=created_by,
    )
    db.add(case)
    await db.commit()
    await db.refresh(case)
    logger.info(
        "Recovery case %s opened for campaign %s: %s owed by %s",
        case.recovery_case_id, campaign_id, released, campaign.creator_id,
    )
    return case


async def record_recovery_payment(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    amount: Decimal,
    actor_id: uuid.UUID | None = None,
    note: str | None = None,
) -> RecoveryCase:
    """Record money returned by the creator and pass it on to donors."""
    if amount <= 0:
        raise InvalidAmount("Recovered amount must be positive", amount=str(amount))

    result = await db.execute(
        select(RecoveryCase)
        .where(RecoveryCase.campaign_id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    case = result.scalar_one_or_none()
    if case is None:
        raise RecoveryCaseNotFound("No recovery case for this campaign", campaign_id=str(campaign_id))
    if case.status not in RECOVERY_OPEN_STATUSES:
        raise IllegalTransition(
            f"Recovery case is {case.status.value}",
            current_status=case.status.value,
            expected_status=[s.value for s in RECOVERY_OPEN_STATUSES],
        )

    outstanding = case.total_amount - case.recovered_amount
    if amount > outstanding:
        raise InvalidAmount(
            f"Recovered amount {amount} exceeds outstanding {outstanding}",
            amount=str(amount),
            outstanding=str(outstanding),
        )

    case.recovered_amount = case.recovered_amount + amount
    if case.recovered_amount >= case.total_amount:
        case.status = RecoveryStatus.COMPLETED
    elif case.status != RecoveryStatus.LEGAL_ACTION:
        case.status = RecoveryStatus.IN_PROGRESS
    extra = {"actor_id": str(actor_id)} if actor_id else {}
    if note:
        extra["note"] = note
    case.timeline = [*(case.timeline or []), _timeline_entry("payment_received", amount, **extra)]
    await db.commit()
    await db.refresh(case)

    logger.info(
        "Recovery case %s: received %s, %s of %s recovered",
        case.recovery_case_id, amount, case.recovered_amount, case.total_amount,
    )
    await distribute_recovered_funds(db, campaign_id)
    await db.refresh(case)
    return case


async def distribute_recovered_funds(
    db: AsyncSession, campaign_id: uuid.UUID
) -> list[RefundCase]:
    """Allocate newly recovered money to recovery refund cases, pro rata to what each is owed."""
    result = await db.execute(
        select(RecoveryCase)
        .where(RecoveryCase.campaign_id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    recovery = result.scalar_one_or_none()
    if recovery is None:
        raise RecoveryCaseNotFound("No recovery case for this campaign", campaign_id=str(campaign_id))

    undistributed = recovery.recovered_amount - recovery.distributed_amount
    if undistributed <= 0:
        return []

    result = await db.execute(
        select(RefundCase)
        .where(
            RefundCase.campaign_id == campaign_id,
            RefundCase.refund_method == RefundMethod.RECOVERY,
            RefundCase.remaining_refund > 0,
        )
        .order_by(RefundCase.created_at)
        .with_for_update().execution_options(populate_existing=True)
    )
    owed_cases = list(result.scalars().all())
    total_owed = sum((c.remaining_refund for c in owed_cases), ZERO)
    if total_owed <= 0:
        return []

    ratio = min(Decimal("1"), undistributed / total_owed)
    left = undistributed
    allocated: list[RefundCase] = []
    for case in owed_cases:
        share = min(floor_cents(case.remaining_refund * ratio), left)
        if share <= 0:
            continue
        left -= share
        case.refunded_amount = case.refunded_amount + share
        case.remaining_refund = case.remaining_refund - share
        allocated.append(case)

    distributed = undistributed - left
    recovery.distributed_amount = recovery.distributed_amount + distributed
    recovery.timeline = [
        *(recovery.timeline or []),
        _timeline_entry("distributed", distributed, refund_cases=len(allocated)),
    ]
    await db.commit()

    logger.info(
        "Recovery for campaign %s: distributed %s over %d case(s)",
        campaign_id, distributed, len(allocated),
    )

    paid = []
    for case in allocated:
        try:
            paid.append(await process_refund(db, case.refund_id))
        except PaymentGatewayError:
            paid.append(await get_refund(db, case.refund_id))
    return paid


async def expire_overdue_recovery_cases(
    db: AsyncSession, now: datetime | None = None
) -> int:
    """Mark open recovery cases past their deadline as failed."""
    now = now or utcnow()
    result = await db.execute(
        select(RecoveryCase)
        .where(
            RecoveryCase.status.in_([RecoveryStatus.PENDING, RecoveryStatus.IN_PROGRESS]),
            RecoveryCase.deadline <= now,
        )
        .with_for_update().execution_options(populate_existing=True)
    )
    overdue = list(result.scalars().all())
    for case in overdue:
        case.status = RecoveryStatus.FAILED
        case.timeline = [
            *(case.timeline or []),
            _timeline_entry("deadline_passed", case.total_amount - case.recovered_amount),
        ]
        logger.warning(
            "Recovery case %s for campaign %s missed its deadline with %s outstanding",
            case.recovery_case_id, case.campaign_id, case.total_amount - case.recovered_amount,
        )
    if overdue:
        await db.commit()
    return len(overdue)


async def escalate_recovery_case(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    actor_id: uuid.UUID,
    legal_case_id: str,
    note: str | None = None,
) -> RecoveryCase:
    """Hand an unresolved recovery case to legal action.

    Payments recorded afterwards are still distributed to donors; the case
    leaves ``legal_action`` only once the full amount is recovered.
    """
    result = await db.execute(
        select(RecoveryCase)
        .where(RecoveryCase.campaign_id == campaign_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    case = result.scalar_one_or_none()
    if case is None:
        raise RecoveryCaseNotFound("No recovery case for this campaign", campaign_id=str(campaign_id))
    if case.status not in ESCALATABLE_STATUSES:
        raise IllegalTransition(
            f"Recovery case is {case.status.value}",
            current_status=case.status.value,
            expected_status=[s.value for s in ESCALATABLE_STATUSES],
        )

    outstanding = case.total_amount - case.recovered_amount
    case.status = RecoveryStatus.LEGAL_ACTION
    case.legal_case_id = legal_case_id
    case.escalated_at = utcnow()
    extra = {"actor_id": str(actor_id), "legal_case_id": legal_case_id}
    if note:
        extra["note"] = note
    case.timeline = [*(case.timeline or []), _timeline_entry("escalated_to_legal", outstanding, **extra)]
    await db.commit()
    await db.refresh(case)

    logger.warning(
        "Recovery case %s for campaign %s escalated to legal action %s with %s outstanding",
        case.recovery_case_id, campaign_id, legal_case_id, outstanding,
    )
    await notify(db, "recovery.escalated", case.creator_id, {
        "recovery_case_id": case.recovery_case_id,
        "campaign_id": campaign_id,
        "legal_case_id": legal_case_id,
        "outstanding": outstanding,
    })
    return case
