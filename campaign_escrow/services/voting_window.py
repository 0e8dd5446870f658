"""Voting window scheduler using a Redis sorted set.

Each pending window transition is a member ``start:<escrow_id>`` or
``close:<escrow_id>`` scored by its due unix timestamp. A single async
consumer sleeps until the earliest entry is due, claims it with ZREM and
drives the transition. Redis is only a wake-up mechanism: the periodic
sweep and the lazy close on read cover anything the queue misses, and every
transition is a compare-and-swap so running it twice is harmless.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_escrow.config import settings
from campaign_escrow.database import utcnow
from campaign_escrow.models.escrow import EscrowAction, WithdrawalRequest, WithdrawalStatus
from campaign_escrow.services.escrow import (
    _log_audit,
    compare_and_set_status,
    get_escrow,
    start_voting,
)
from campaign_escrow.services.voting import decide_outcome, tally_votes
from campaign_escrow.services.webhooks import notify_escrow_event

logger = logging.getLogger(__name__)

WINDOW_KEY = "escrow:voting_windows"
START = "start"
CLOSE = "close"


def _member(kind: str, escrow_id: uuid.UUID) -> str:
    return f"{kind}:{escrow_id}"


def _parse_member(member: bytes | str) -> tuple[str, uuid.UUID]:
    if isinstance(member, bytes):
        member = member.decode()
    kind, _, raw_id = member.partition(":")
    return kind, uuid.UUID(raw_id)


async def enqueue_window(
    redis: aioredis.Redis, kind: str, escrow_id: uuid.UUID, due: datetime
) -> None:
    """ZADD is idempotent; re-adding moves the entry to the new due time."""
    await redis.zadd(WINDOW_KEY, {_member(kind, escrow_id): due.timestamp()})
    logger.info("Scheduled %s for %s at %s", kind, escrow_id, due.isoformat())


async def _schedule(kind: str, escrow_id: uuid.UUID, due: datetime) -> bool:
    from campaign_escrow.redis import get_redis_client

    redis = get_redis_client()
    try:
        await enqueue_window(redis, kind, escrow_id, due)
        return True
    except (RedisError, OSError) as e:
        logger.warning("Could not schedule %s for %s, sweep will pick it up: %s", kind, escrow_id, e)
        return False
    finally:
        await redis.aclose()


async def schedule_voting_start(escrow_id: uuid.UUID, due: datetime) -> bool:
    return await _schedule(START, escrow_id, due)


async def schedule_voting_close(escrow_id: uuid.UUID, due: datetime) -> bool:
    return await _schedule(CLOSE, escrow_id, due)


async def cancel_scheduled_window(escrow_id: uuid.UUID) -> None:
    """Drop queued entries for a request that left the voting phase."""
    from campaign_escrow.redis import get_redis_client

    redis = get_redis_client()
    try:
        await redis.zrem(WINDOW_KEY, _member(START, escrow_id), _member(CLOSE, escrow_id))
    except (RedisError, OSError) as e:
        logger.warning("Could not unschedule %s: %s", escrow_id, e)
    finally:
        await redis.aclose()


async def close_voting_window(
    db: AsyncSession, escrow_id: uuid.UUID, now: datetime | None = None
) -> bool:
    """Tally and close an elapsed window. Returns True only for the caller that closed it."""
    now = now or utcnow()
    escrow = await get_escrow(db, escrow_id, for_update=True)
    if escrow.request_status != WithdrawalStatus.VOTING_IN_PROGRESS:
        return False
    if escrow.voting_end_date is None or escrow.voting_end_date > now:
        return False

    tally = await tally_votes(db, escrow_id)
    outcome = decide_outcome(tally)
    values: dict = {}
    if outcome == WithdrawalStatus.REJECTED_BY_COMMUNITY:
        values["community_rejected_at"] = now

    won = await compare_and_set_status(
        db, escrow_id, WithdrawalStatus.VOTING_IN_PROGRESS, outcome,
        WithdrawalRequest.voting_end_date <= now,
        **values,
    )
    if not won:
        await db.rollback()
        return False

    await _log_audit(
        db, escrow_id, EscrowAction.VOTING_CLOSED, escrow.withdrawal_request_amount,
        from_status=WithdrawalStatus.VOTING_IN_PROGRESS,
        to_status=outcome,
        metadata={"tally": tally.as_dict(), "decision_rule": settings.voting_decision_rule},
    )
    await db.commit()
    await db.refresh(escrow)

    logger.info(
        "Voting closed for %s: %s (approve %s%%)",
        escrow_id, outcome.value, tally.approve_percentage,
    )
    await notify_escrow_event(db, escrow, "voting.ended", {"tally": tally.as_dict()})
    return True


async def _run_transition(kind: str, escrow_id: uuid.UUID, session_factory=None) -> None:  # type: ignore[no-untyped-def]
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    try:
        async with session_factory() as db:
            if kind == START:
                await start_voting(db, escrow_id)
            elif kind == CLOSE:
                await close_voting_window(db, escrow_id)
            else:
                logger.warning("Unknown voting window entry %s:%s", kind, escrow_id)
    except Exception:
        logger.exception("Voting window %s failed for %s", kind, escrow_id)


async def run_voting_window_consumer() -> None:
    """Sleep until the next window entry is due, then drive its transition."""
    from campaign_escrow.redis import get_redis_client

    redis = get_redis_client()

    while True:
        try:
            entries = await redis.zrangebyscore(
                WINDOW_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(5)
                continue

            member, due_ts = entries[0]
            now = time.time()

            if due_ts > now:
                # Wake at least every 60s so newly added earlier entries are seen
                await asyncio.sleep(min(due_ts - now, 60.0))
                continue

            removed = await redis.zrem(WINDOW_KEY, member)
            if not removed:
                # Another consumer claimed it
                continue

            kind, escrow_id = _parse_member(member)
            await _run_transition(kind, escrow_id)

        except asyncio.CancelledError:
            logger.info("Voting window consumer shutting down")
            break
        except Exception:
            logger.exception("Voting window consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def sweep_voting_windows(
    session_factory=None,  # type: ignore[no-untyped-def]
    now: datetime | None = None,
) -> tuple[int, int]:
    """Start due pending windows and close elapsed ones. Returns (started, closed)."""
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    now = now or utcnow()
    start_cutoff = now.timestamp() - settings.voting_start_delay_seconds

    async with session_factory() as db:
        result = await db.execute(
            select(WithdrawalRequest.escrow_id, WithdrawalRequest.created_at).where(
                WithdrawalRequest.request_status == WithdrawalStatus.PENDING_VOTING,
            )
        )
        to_start = [eid for eid, created in result.all() if created.timestamp() <= start_cutoff]

        result = await db.execute(
            select(WithdrawalRequest.escrow_id).where(
                WithdrawalRequest.request_status == WithdrawalStatus.VOTING_IN_PROGRESS,
                WithdrawalRequest.voting_end_date <= now,
            )
        )
        to_close = list(result.scalars().all())

    started = 0
    for escrow_id in to_start:
        try:
            async with session_factory() as db:
                escrow = await start_voting(db, escrow_id, now)
                if escrow.request_status == WithdrawalStatus.VOTING_IN_PROGRESS:
                    started += 1
        except Exception:
            logger.exception("Sweep could not start voting for %s", escrow_id)

    closed = 0
    for escrow_id in to_close:
        try:
            async with session_factory() as db:
                if await close_voting_window(db, escrow_id, now):
                    closed += 1
        except Exception:
            logger.exception("Sweep could not close voting for %s", escrow_id)

    if started or closed:
        logger.info("Voting sweep: started %d, closed %d", started, closed)
    return started, closed


async def recover_voting_windows(
    session_factory=None,  # type: ignore[no-untyped-def]
    redis_client: aioredis.Redis | None = None,
) -> int:
    """Re-enqueue every open window after a restart."""
    if session_factory is None:
        from campaign_escrow.database import async_session_factory
        session_factory = async_session_factory

    async with session_factory() as db:
        result = await db.execute(
            select(WithdrawalRequest).where(
                WithdrawalRequest.request_status.in_([
                    WithdrawalStatus.PENDING_VOTING,
                    WithdrawalStatus.VOTING_IN_PROGRESS,
                ])
            )
        )
        requests = list(result.scalars().all())

    if not requests:
        logger.info("Voting window recovery: nothing open")
        return 0

    owns_client = redis_client is None
    if owns_client:
        from campaign_escrow.redis import get_redis_client
        redis_client = get_redis_client()
    try:
        for escrow in requests:
            if escrow.request_status == WithdrawalStatus.PENDING_VOTING:
                due = escrow.created_at + timedelta(seconds=settings.voting_start_delay_seconds)
                await enqueue_window(redis_client, START, escrow.escrow_id, due)
            else:
                await enqueue_window(redis_client, CLOSE, escrow.escrow_id, escrow.voting_end_date)
    finally:
        if owns_client:
            await redis_client.aclose()

    logger.info("Voting window recovery: re-enqueued %d windows", len(requests))
    return len(requests)
