"""Payment transfer bookkeeping shared by disbursements and refunds."""

import logging
import uuid
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.database import utcnow
from campaign_escrow.errors import PaymentGatewayError, TransferNotFound
from campaign_escrow.models.payment import PaymentTransfer, TransferKind, TransferStatus
from campaign_escrow.schemas.payment import GatewayTransferEvent
from campaign_escrow.services import payment_gateway

logger = logging.getLogger(__name__)


async def get_transfer_by_key(db: AsyncSession, idempotency_key: str) -> PaymentTransfer | None:
    result = await db.execute(
        select(PaymentTransfer).where(PaymentTransfer.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def get_or_create_transfer(
    db: AsyncSession,
    idempotency_key: str,
    kind: TransferKind,
    reference_id: uuid.UUID,
    recipient_id: uuid.UUID,
    amount: Decimal,
) -> PaymentTransfer:
    """One transfer row per idempotency key. Commits a newly created row."""
    transfer = await get_transfer_by_key(db, idempotency_key)
    if transfer is not None:
        return transfer

    transfer = PaymentTransfer(
        transfer_id=uuid.uuid4(),
        idempotency_key=idempotency_key,
        kind=kind,
        reference_id=reference_id,
        recipient_id=recipient_id,
        amount=amount,
        status=TransferStatus.PENDING,
    )
    db.add(transfer)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent caller created it first
        await db.rollback()
        transfer = await get_transfer_by_key(db, idempotency_key)
        if transfer is None:
            raise
        return transfer
    await db.refresh(transfer)
    return transfer


async def send_transfer(
    db: AsyncSession, transfer: PaymentTransfer, reference: str
) -> bool:
    """Call the gateway for a pending or failed transfer and record the answer.

    Returns True when the payout is confirmed and the caller should settle
    it. A pending transfer that already has a gateway transaction id is
    awaiting its confirmation callback and is not re-sent. Raises
    PaymentGatewayError (after recording the failure) when the gateway
    cannot complete the request.
    """
    if transfer.status == TransferStatus.SUCCEEDED:
        return True
    if transfer.status == TransferStatus.PENDING and transfer.gateway_transaction_id:
        if gateway_confirmed(transfer):
            return True
        logger.info("Transfer %s awaiting gateway confirmation", transfer.idempotency_key)
        return False

    try:
        result = await payment_gateway.create_transfer(
            transfer.idempotency_key, transfer.recipient_id, transfer.amount, reference,
        )
    except PaymentGatewayError as e:
        transfer.status = TransferStatus.FAILED
        transfer.attempts += int(e.context.get("attempts", 1))
        transfer.last_error = e.message[:1000]
        await db.commit()
        logger.error("Transfer %s failed: %s", transfer.idempotency_key, e.message)
        raise

    transfer.attempts += result.attempts
    transfer.gateway_transaction_id = result.transaction_id
    transfer.gateway_response = {"status": result.status, "failure_reason": result.failure_reason}
    if result.status == "failed":
        transfer.status = TransferStatus.FAILED
        transfer.last_error = (result.failure_reason or "declined by gateway")[:1000]
        await db.commit()
        raise PaymentGatewayError(
            "Payment gateway declined the transfer",
            idempotency_key=transfer.idempotency_key,
            reason=transfer.last_error,
        )

    transfer.status = TransferStatus.PENDING
    transfer.last_error = None
    await db.commit()
    await db.refresh(transfer)
    logger.info(
        "Transfer %s accepted by gateway: txn=%s status=%s",
        transfer.idempotency_key, result.transaction_id, result.status,
    )
    return result.status == "succeeded"


def gateway_confirmed(transfer: PaymentTransfer) -> bool:
    """True when the synchronous gateway answer already reported success."""
    return bool(transfer.gateway_response and transfer.gateway_response.get("status") == "succeeded")


async def mark_transfer_succeeded(
    db: AsyncSession, transfer_id: uuid.UUID, transaction_id: str | None = None
) -> bool:
    """CAS a transfer to succeeded. Does not commit; True for the single winner."""
    values: dict = {"status": TransferStatus.SUCCEEDED, "confirmed_at": utcnow(), "last_error": None}
    if transaction_id:
        values["gateway_transaction_id"] = transaction_id
    result = await db.execute(
        update(PaymentTransfer)
        .where(
            PaymentTransfer.transfer_id == transfer_id,
            PaymentTransfer.status != TransferStatus.SUCCEEDED,
        )
        .values(**values)
    )
    return result.rowcount == 1


async def handle_transfer_event(
    db: AsyncSession, event: GatewayTransferEvent
) -> PaymentTransfer:
    """Apply a verified gateway confirmation. Replays are no-ops."""
    transfer = await get_transfer_by_key(db, event.idempotency_key)
    if transfer is None:
        raise TransferNotFound(
            "No transfer for this idempotency key", idempotency_key=event.idempotency_key,
        )

    if event.status == "failed":
        if transfer.status == TransferStatus.SUCCEEDED:
            logger.warning("Ignoring failure callback for settled transfer %s", transfer.idempotency_key)
            return transfer
        transfer.status = TransferStatus.FAILED
        transfer.gateway_transaction_id = event.transaction_id
        transfer.last_error = (event.failure_reason or "failed at gateway")[:1000]
        await db.commit()
        logger.error("Gateway reported transfer %s failed: %s", transfer.idempotency_key, transfer.last_error)
        if transfer.kind == TransferKind.REFUND:
            from campaign_escrow.services.refund import mark_refund_failed
            await mark_refund_failed(db, transfer.reference_id, transfer.last_error)
        return transfer

    if transfer.kind == TransferKind.DISBURSEMENT:
        from campaign_escrow.services.disbursement import settle_release
        await settle_release(db, transfer, event.transaction_id)
    else:
        from campaign_escrow.services.refund import settle_refund_payout
        await settle_refund_payout(db, transfer, event.transaction_id)

    await db.refresh(transfer)
    return transfer
