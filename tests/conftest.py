"""Test configuration and fixtures.

Each test gets its own database: in-memory SQLite through aiosqlite by
default, or whatever ``TEST_DATABASE_URL`` points at (tables are dropped and
recreated per test). Redis is replaced by a fakeredis server shared by every
client the services open during the test.
"""

import itertools
import uuid
from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from campaign_escrow.config import settings
from campaign_escrow.database import Base, get_db
from campaign_escrow.main import app
import campaign_escrow.models.payment  # noqa: F401  register tables
import campaign_escrow.models.refund  # noqa: F401
import campaign_escrow.models.vote  # noqa: F401
import campaign_escrow.models.webhook  # noqa: F401
from campaign_escrow.models.campaign import Campaign, CampaignStatus, DonationRecord
from campaign_escrow.models.escrow import WithdrawalRequest
from campaign_escrow.services import escrow as escrow_service
from campaign_escrow.services import ledger
from campaign_escrow.services.payment_gateway import TransferResult
from campaign_escrow.services.voting_window import close_voting_window


# ---------------------------------------------------------------------------
# Settings and backends
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "auto_disburse_on_approval", False)
    object.__setattr__(settings, "auto_process_refunds", False)
    object.__setattr__(settings, "notification_webhook_url", "")
    object.__setattr__(settings, "identity_header_secret", "")
    object.__setattr__(settings, "payment_gateway_api_key", "test-gateway-key")
    object.__setattr__(settings, "payment_retry_backoff_seconds", 0)
    object.__setattr__(settings, "voting_start_delay_seconds", 0)
    object.__setattr__(settings, "voting_decision_rule", "threshold")
    object.__setattr__(settings, "milestone_percentages", [50, 75, 100])
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    url = settings.test_database_url
    if url.startswith("sqlite"):
        test_engine = create_async_engine(
            url, poolclass=StaticPool, connect_args={"check_same_thread": False},
        )
    else:
        test_engine = create_async_engine(url)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def redis_client(redis_server: fakeredis.FakeServer) -> AsyncGenerator[fakeredis.FakeAsyncRedis, None]:
    """Client for assertions; services get their own clients on the same server."""
    client = fakeredis.FakeAsyncRedis(server=redis_server)
    yield client
    await client.aclose()


@pytest.fixture(autouse=True)
def _patch_redis(redis_server: fakeredis.FakeServer) -> None:
    """Services open their Redis clients through get_redis_client."""
    with patch(
        "campaign_escrow.redis.get_redis_client",
        lambda: fakeredis.FakeAsyncRedis(server=redis_server),
    ):
        yield  # type: ignore[misc]


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session on the test database. Background services get the same factory."""
    with patch("campaign_escrow.database.async_session_factory", session_factory):
        async with session_factory() as session:
            yield session


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with a fresh session per request."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    with patch("campaign_escrow.database.async_session_factory", session_factory):
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def actor_headers(actor_id: uuid.UUID | str, role: str = "user") -> dict[str, str]:
    """Identity headers as the upstream auth gateway forwards them."""
    return {"X-Actor-Id": str(actor_id), "X-Actor-Role": role}


async def make_campaign(
    db: AsyncSession,
    goal: str = "100000000.00",
    creator_id: uuid.UUID | None = None,
    status: CampaignStatus = CampaignStatus.ACTIVE,
) -> Campaign:
    """Campaign with a goal high enough that test donations cross no milestone."""
    return await ledger.register_campaign(
        db,
        uuid.uuid4(),
        creator_id or uuid.uuid4(),
        Decimal(goal),
        title="Community garden",
        status=status,
    )


async def donate(
    db: AsyncSession,
    campaign_id: uuid.UUID,
    amount: str,
    donor_id: uuid.UUID | None = None,
) -> DonationRecord:
    """Record and confirm a donation."""
    donation = await ledger.record_donation(
        db, campaign_id, donor_id or uuid.uuid4(), Decimal(amount),
    )
    return await ledger.complete_donation(db, donation.donation_id)


async def open_voting(
    db: AsyncSession,
    target: Campaign,
    amount: str,
    reason: str = "Seeds, soil and raised beds for phase one",
) -> WithdrawalRequest:
    """Create a withdrawal request and open its voting window right away."""
    request = await escrow_service.create_withdrawal_request(
        db, target.campaign_id, Decimal(amount), reason, target.creator_id,
    )
    return await escrow_service.start_voting(db, request.escrow_id)


async def finish_voting(db: AsyncSession, request: WithdrawalRequest) -> WithdrawalRequest:
    """Close the window as if its end date had just passed."""
    await db.refresh(request)
    await close_voting_window(
        db, request.escrow_id, now=request.voting_end_date + timedelta(seconds=1),
    )
    await db.refresh(request)
    return request


def mock_gateway(status: str = "succeeded", failure_reason: str | None = None):  # type: ignore[no-untyped-def]
    """Patch the gateway client. Each call returns a new transaction id."""
    counter = itertools.count(1)

    async def _create_transfer(idempotency_key, recipient_id, amount, reference):  # type: ignore[no-untyped-def]
        return TransferResult(
            transaction_id=f"txn-{next(counter)}",
            status=status,
            failure_reason=failure_reason,
        )

    return patch(
        "campaign_escrow.services.payment_gateway.create_transfer",
        AsyncMock(side_effect=_create_transfer),
    )
