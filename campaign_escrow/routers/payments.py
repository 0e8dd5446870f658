"""Inbound payment gateway confirmations."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.database import get_db
from campaign_escrow.schemas.payment import GatewayTransferEvent, PaymentTransferResponse
from campaign_escrow.services.payment_gateway import verify_gateway_signature
from campaign_escrow.services.transfers import handle_transfer_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_model=PaymentTransferResponse)
async def gateway_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> PaymentTransferResponse:
    """Signed transfer confirmation. Replays of a settled transfer are no-ops."""
    timestamp = request.headers.get("X-Gateway-Timestamp", "")
    signature = request.headers.get("X-Gateway-Signature", "")
    body = await request.body()

    if not verify_gateway_signature(timestamp, body, signature):
        logger.warning("Rejected gateway callback with bad signature")
        raise HTTPException(status_code=403, detail="Invalid gateway signature")

    try:
        event = GatewayTransferEvent.model_validate_json(body)
    except ValidationError:
        raise HTTPException(status_code=422, detail="Malformed gateway event")

    transfer = await handle_transfer_event(db, event)
    return PaymentTransferResponse.model_validate(transfer)
