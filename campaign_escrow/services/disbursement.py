"""Disbursement executor: pay an approved withdrawal request to the creator.

The escrow moves to ``released`` only once the gateway confirms the payout,
either in its synchronous answer or through the signed callback. Every
attempt reuses the transfer keyed ``escrow-release:<escrow_id>``.
"""

import asyncio
import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.database import utcnow
from campaign_escrow.models.escrow import EscrowAction, WithdrawalRequest, WithdrawalStatus
from campaign_escrow.models.payment import PaymentTransfer, TransferKind
from campaign_escrow.services import ledger
from campaign_escrow.services.escrow import (
    _log_audit,
    compare_and_set_status,
    get_escrow,
    illegal_transition,
)
from campaign_escrow.services.transfers import (
    get_or_create_transfer,
    mark_transfer_succeeded,
    send_transfer,
)
from campaign_escrow.services.webhooks import notify_escrow_event

logger = logging.getLogger(__name__)


def release_idempotency_key(escrow_id: uuid.UUID) -> str:
    return f"escrow-release:{escrow_id}"


async def release_escrow(db: AsyncSession, escrow_id: uuid.UUID) -> WithdrawalRequest:
    """Disburse an admin-approved request. Calling it again is safe.

    Raises PaymentGatewayError when the payout fails; the request then stays
    ``admin_approved`` and can be retried.
    """
    escrow = await get_escrow(db, escrow_id)
    if escrow.request_status == WithdrawalStatus.RELEASED:
        return escrow
    if escrow.request_status != WithdrawalStatus.ADMIN_APPROVED:
        raise illegal_transition(escrow, WithdrawalStatus.ADMIN_APPROVED)

    campaign = await ledger.get_campaign(db, escrow.campaign_id)
    transfer = await get_or_create_transfer(
        db,
        release_idempotency_key(escrow_id),
        TransferKind.DISBURSEMENT,
        escrow_id,
        campaign.creator_id,
        escrow.withdrawal_request_amount,
    )

    await _log_audit(
        db, escrow_id, EscrowAction.RELEASE_INITIATED, escrow.withdrawal_request_amount,
        metadata={"idempotency_key": transfer.idempotency_key, "transfer_status": transfer.status.value},
    )
    await db.commit()

    confirmed = await send_transfer(db, transfer, f"withdrawal:{escrow_id}")
    if confirmed:
        await settle_release(db, transfer, transfer.gateway_transaction_id)

    await db.refresh(escrow)
    return escrow


async def settle_release(
    db: AsyncSession, transfer: PaymentTransfer, transaction_id: str | None
) -> bool:
    """Record a confirmed payout: transfer succeeded, escrow released, funds leave the ledger.

    All three happen in one transaction and only once per escrow.
    """
    escrow_id = transfer.reference_id
    await mark_transfer_succeeded(db, transfer.transfer_id, transaction_id)

    now = utcnow()
    won = await compare_and_set_status(
        db, escrow_id, WithdrawalStatus.ADMIN_APPROVED, WithdrawalStatus.RELEASED,
        released_at=now,
    )
    if not won:
        # Transfer bookkeeping still commits; the escrow was already settled
        await db.commit()
        logger.info("Release for %s already settled", escrow_id)
        return False

    escrow = await get_escrow(db, escrow_id)
    campaign = await ledger.get_campaign(db, escrow.campaign_id, for_update=True)
    campaign.current_amount = campaign.current_amount - escrow.withdrawal_request_amount

    await _log_audit(
        db, escrow_id, EscrowAction.RELEASED, escrow.withdrawal_request_amount,
        from_status=WithdrawalStatus.ADMIN_APPROVED,
        to_status=WithdrawalStatus.RELEASED,
        metadata={"gateway_transaction_id": transaction_id},
    )
    await db.commit()
    await db.refresh(escrow)

    logger.info(
        "Withdrawal %s released: amount=%s txn=%s",
        escrow_id, escrow.withdrawal_request_amount, transaction_id,
    )
    await notify_escrow_event(db, escrow, "withdrawal.released", {
        "gateway_transaction_id": transaction_id,
    })
    return True


async def process_release(escrow_id: uuid.UUID, session_factory=None) -> None:  # type: ignore[no-untyped-def]
    """Background task wrapper around release_escrow."""
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    try:
        async with session_factory() as db:
            escrow = await release_escrow(db, escrow_id)
            logger.info("Release task for %s finished: %s", escrow_id, escrow.request_status.value)
    except Exception:
        logger.exception("Release task for %s failed", escrow_id)


def spawn_release(escrow_id: uuid.UUID) -> asyncio.Task:
    return asyncio.create_task(process_release(escrow_id))


async def recover_pending_releases(session_factory=None) -> int:  # type: ignore[no-untyped-def]
    """Re-spawn release tasks for approved requests after a restart."""
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    async with session_factory() as db:
        result = await db.execute(
            select(WithdrawalRequest.escrow_id).where(
                WithdrawalRequest.request_status == WithdrawalStatus.ADMIN_APPROVED,
            )
        )
        escrow_ids = list(result.scalars().all())

    for escrow_id in escrow_ids:
        logger.info("Recovering release for %s", escrow_id)
        spawn_release(escrow_id)

    if escrow_ids:
        logger.info("Release recovery: %d task(s) re-spawned", len(escrow_ids))
    return len(escrow_ids)
