"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from campaign_escrow.config import settings
from campaign_escrow.routers import (
    admin,
    campaigns,
    donations,
    payments,
    recovery_cases,
    refunds,
    withdrawals,
)

logger = logging.getLogger(__name__)


async def _run_periodic_sweep() -> None:
    """Backstop for the Redis consumer: drive due windows and expire recovery cases."""
    from campaign_escrow.database import async_session_factory
    from campaign_escrow.services.refund import expire_overdue_recovery_cases
    from campaign_escrow.services.voting_window import sweep_voting_windows

    while True:
        try:
            await sweep_voting_windows()
            async with async_session_factory() as db:
                await expire_overdue_recovery_cases(db)
        except asyncio.CancelledError:
            logger.info("Periodic sweep shutting down")
            break
        except Exception:
            logger.exception("Periodic sweep failed")
        await asyncio.sleep(settings.voting_sweep_interval_seconds)


async def _recover_background_work() -> None:
    """Re-enqueue voting windows and re-spawn approved payouts after a restart."""
    from campaign_escrow.services.disbursement import recover_pending_releases
    from campaign_escrow.services.voting_window import recover_voting_windows

    try:
        await recover_voting_windows()
    except Exception:
        logger.exception("Voting window recovery failed")

    try:
        await recover_pending_releases()
    except Exception:
        logger.exception("Release recovery failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from campaign_escrow.services.voting_window import run_voting_window_consumer
    consumer_task = asyncio.create_task(run_voting_window_consumer())
    sweep_task = asyncio.create_task(_run_periodic_sweep())
    await _recover_background_work()

    yield

    for task in (consumer_task, sweep_task):
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Campaign Escrow",
    description="Donor-voted escrow, disbursement and refunds for crowdfunding campaigns",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(campaigns.router)
app.include_router(donations.router)
app.include_router(withdrawals.router)
app.include_router(refunds.router)
app.include_router(recovery_cases.router)
app.include_router(admin.router)
app.include_router(payments.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
