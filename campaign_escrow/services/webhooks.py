"""Domain event notifications.

Every event is stored as a WebhookDelivery row, then published on the Redis
notification channel. When ``notification_webhook_url`` is configured the
event is also POSTed there by a background task, signed with
``notification_webhook_secret``. Notification failures never undo the
business transaction that produced the event.
"""

import asyncio
import json
import logging
import time
import uuid
from datetime import UTC, datetime

import httpx
from pydantic_core import to_jsonable_python
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.models.escrow import WithdrawalRequest
from campaign_escrow.models.webhook import WebhookDelivery, WebhookStatus
from campaign_escrow.utils.crypto import sign_payload

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({
    "withdrawal.created",
    "voting.started",
    "voting.extended",
    "voting.ended",
    "withdrawal.approved",
    "withdrawal.rejected",
    "withdrawal.released",
    "campaign.cancelled",
    "refund.issued",
    "recovery.escalated",
})


def sign_webhook_payload(secret: str, timestamp: str, body: str) -> str:
    """Generate HMAC-SHA256 signature for an outbound notification body."""
    return sign_payload(secret, timestamp, body)


def _as_uuid(value: object) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def build_event_payload(event_type: str, details: dict) -> dict:
    return {
        "event": event_type,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": to_jsonable_python(details),
    }


async def enqueue_webhook(
    db: AsyncSession,
    target_id: uuid.UUID | None,
    event_type: str,
    payload: dict,
    *,
    campaign_id: uuid.UUID | None = None,
    escrow_id: uuid.UUID | None = None,
) -> WebhookDelivery:
    """Create a delivery record for an event."""
    delivery = WebhookDelivery(
        delivery_id=uuid.uuid4(),
        target_id=target_id,
        campaign_id=campaign_id,
        escrow_id=escrow_id,
        event_type=event_type,
        payload=payload,
        status=WebhookStatus.PENDING,
    )
    db.add(delivery)
    await db.commit()
    await db.refresh(delivery)

    logger.info("Event %s recorded for %s", event_type, target_id)
    return delivery


async def publish_event(payload: dict) -> bool:
    """Publish on the realtime channel. Returns False if Redis is unreachable."""
    from campaign_escrow.redis import get_redis_client

    redis = get_redis_client()
    try:
        await redis.publish(settings.notification_channel, json.dumps(payload))
        return True
    except (RedisError, OSError) as e:
        logger.warning("Could not publish %s: %s", payload.get("event"), e)
        return False
    finally:
        await redis.aclose()


async def notify(
    db: AsyncSession,
    event_type: str,
    target_id: uuid.UUID | None,
    details: dict,
) -> WebhookDelivery | None:
    """Record and publish one domain event."""
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")

    payload = build_event_payload(event_type, details)
    try:
        delivery = await enqueue_webhook(
            db, target_id, event_type, payload,
            campaign_id=_as_uuid(details.get("campaign_id")),
            escrow_id=_as_uuid(details.get("escrow_id")),
        )
    except SQLAlchemyError:
        logger.exception("Failed to record event %s for %s", event_type, target_id)
        await db.rollback()
        return None

    await publish_event(payload)

    if settings.notification_webhook_url:
        asyncio.create_task(deliver_webhook(delivery.delivery_id))
    return delivery


async def notify_escrow_event(
    db: AsyncSession,
    escrow: WithdrawalRequest,
    event_type: str,
    details: dict | None = None,
) -> WebhookDelivery | None:
    """Event about one withdrawal request, addressed to the request itself."""
    return await notify(
        db,
        event_type,
        escrow.escrow_id,
        {
            "escrow_id": escrow.escrow_id,
            "campaign_id": escrow.campaign_id,
            "status": escrow.request_status.value,
            "amount": escrow.withdrawal_request_amount,
            **(details or {}),
        },
    )


async def list_events(
    db: AsyncSession,
    *,
    campaign_id: uuid.UUID | None = None,
    escrow_id: uuid.UUID | None = None,
    event_type: str | None = None,
    limit: int = 100,
) -> list[WebhookDelivery]:
    """Stored events for one campaign or request, oldest first."""
    query = select(WebhookDelivery)
    if campaign_id is not None:
        query = query.where(WebhookDelivery.campaign_id == campaign_id)
    if escrow_id is not None:
        query = query.where(WebhookDelivery.escrow_id == escrow_id)
    if event_type is not None:
        query = query.where(WebhookDelivery.event_type == event_type)
    result = await db.execute(query.order_by(WebhookDelivery.created_at).limit(limit))
    return list(result.scalars().all())


async def deliver_webhook(delivery_id: uuid.UUID) -> None:
    """Background task: POST a stored event to the configured endpoint."""
    from campaign_escrow.database import async_session_factory

    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookDelivery).where(WebhookDelivery.delivery_id == delivery_id)
        )
        delivery = result.scalar_one_or_none()
        if delivery is None or delivery.status != WebhookStatus.PENDING:
            return

        body = json.dumps(delivery.payload)
        async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
            for attempt in range(settings.webhook_max_retries):
                timestamp = str(int(time.time()))
                delivery.attempts += 1
                try:
                    resp = await client.post(
                        settings.notification_webhook_url,
                        content=body,
                        headers={
                            "Content-Type": "application/json",
                            "X-Webhook-Event": delivery.event_type,
                            "X-Webhook-Timestamp": timestamp,
                            "X-Webhook-Signature": sign_webhook_payload(
                                settings.notification_webhook_secret, timestamp, body,
                            ),
                        },
                    )
                    if resp.status_code < 300:
                        delivery.status = WebhookStatus.DELIVERED
                        delivery.last_error = None
                        await db.commit()
                        logger.info("Delivered %s (%s)", delivery.event_type, delivery_id)
                        return
                    delivery.last_error = f"HTTP {resp.status_code}"
                except httpx.RequestError as e:
                    delivery.last_error = str(e)[:1000]

                await db.commit()
                await asyncio.sleep(2 ** attempt)

        delivery.status = WebhookStatus.FAILED
        await db.commit()
        logger.error(
            "Giving up on %s (%s) after %d attempts: %s",
            delivery.event_type, delivery_id, delivery.attempts, delivery.last_error,
        )
