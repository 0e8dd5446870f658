"""Payment gateway client.

Transfers are created with an ``Idempotency-Key`` header; the gateway returns
the original result for a repeated key, so retrying a call (or re-running a
release after a crash) never pays twice.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

import httpx

from campaign_escrow.config import settings
from campaign_escrow.errors import PaymentGatewayError
from campaign_escrow.utils.crypto import is_timestamp_valid, verify_payload_signature

logger = logging.getLogger(__name__)

TRANSFER_STATUSES = {"succeeded", "pending", "failed"}


@dataclass
class TransferResult:
    """Gateway's answer to a transfer request."""

    transaction_id: str
    status: str
    attempts: int = 1
    failure_reason: str | None = None


class _Retryable(Exception):
    pass


async def _post_transfer(client: httpx.AsyncClient, idempotency_key: str, body: dict) -> dict:
    try:
        resp = await client.post(
            f"{settings.payment_gateway_url}/transfers",
            headers={
                "Authorization": f"Bearer {settings.payment_gateway_api_key}",
                "Content-Type": "application/json",
                "Idempotency-Key": idempotency_key,
            },
            json=body,
        )
    except httpx.TimeoutException as e:
        raise _Retryable(f"timeout: {e}") from e
    except httpx.RequestError as e:
        raise _Retryable(f"request failed: {e}") from e

    if resp.status_code >= 500 or resp.status_code == 429:
        raise _Retryable(f"HTTP {resp.status_code}: {resp.text[:200]}")

    if resp.status_code >= 400:
        logger.error(
            "Gateway rejected transfer %s with %d: %s",
            idempotency_key, resp.status_code, resp.text[:500],
        )
        raise PaymentGatewayError(
            f"Payment gateway rejected the transfer (status {resp.status_code})",
            idempotency_key=idempotency_key,
            gateway_status=resp.status_code,
        )

    try:
        return resp.json()
    except ValueError as e:
        raise PaymentGatewayError(
            "Payment gateway returned an unreadable response",
            idempotency_key=idempotency_key,
        ) from e


async def create_transfer(
    idempotency_key: str,
    recipient_id: uuid.UUID,
    amount: Decimal,
    reference: str,
) -> TransferResult:
    """Ask the gateway to pay ``amount`` to ``recipient_id``.

    Network errors, 429 and 5xx responses are retried up to
    ``payment_max_retries`` times with exponential backoff, always with the
    same idempotency key. Raises PaymentGatewayError when retries run out or
    the gateway refuses the transfer.
    """
    if not settings.payment_gateway_api_key:
        raise PaymentGatewayError(
            "Payment gateway is not configured on this server",
            idempotency_key=idempotency_key,
        )

    body = {
        "recipient_id": str(recipient_id),
        "amount": str(amount),
        "reference": reference,
    }
    last_error = ""
    attempts = max(1, settings.payment_max_retries)

    async with httpx.AsyncClient(timeout=settings.payment_timeout_seconds) as client:
        for attempt in range(1, attempts + 1):
            try:
                data = await _post_transfer(client, idempotency_key, body)
            except _Retryable as e:
                last_error = str(e)
                logger.warning(
                    "Transfer %s attempt %d/%d failed: %s",
                    idempotency_key, attempt, attempts, last_error,
                )
                if attempt < attempts:
                    await asyncio.sleep(settings.payment_retry_backoff_seconds * 2 ** (attempt - 1))
                continue

            status = data.get("status", "pending")
            if status not in TRANSFER_STATUSES or not data.get("transaction_id"):
                raise PaymentGatewayError(
                    "Payment gateway returned an unexpected transfer payload",
                    idempotency_key=idempotency_key,
                )
            return TransferResult(
                transaction_id=str(data["transaction_id"]),
                status=status,
                attempts=attempt,
                failure_reason=data.get("failure_reason"),
            )

    raise PaymentGatewayError(
        "Payment gateway unavailable",
        idempotency_key=idempotency_key,
        attempts=attempts,
        last_error=last_error,
    )


def verify_gateway_signature(timestamp: str, body: bytes, signature: str) -> bool:
    """Check a confirmation callback's ``X-Gateway-*`` headers."""
    if not is_timestamp_valid(timestamp, settings.payment_webhook_max_age_seconds):
        return False
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("Rejecting gateway callback with a non UTF-8 body")
        return False
    return verify_payload_signature(settings.payment_webhook_secret, timestamp, text, signature)
