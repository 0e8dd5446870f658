"""Alembic environment configuration for async SQLAlchemy."""

import asyncio
from logging.config import fileConfig

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from campaign_escrow.config import settings
from campaign_escrow.database import Base
from campaign_escrow.models.campaign import Campaign, DonationRecord  # noqa: F401  ensure models are registered
from campaign_escrow.models.escrow import EscrowAuditLog, WithdrawalRequest  # noqa: F401
from campaign_escrow.models.payment import PaymentTransfer  # noqa: F401
from campaign_escrow.models.refund import RecoveryCase, RefundCase  # noqa: F401
from campaign_escrow.models.vote import Vote  # noqa: F401
from campaign_escrow.models.webhook import WebhookDelivery  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in offline mode."""
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection) -> None:  # type: ignore[no-untyped-def]
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    """Run migrations in async online mode."""
    engine = create_async_engine(settings.database_url)
    async with engine.connect() as connection:
        await connection.run_sync(do_run_migrations)
    await engine.dispose()


def run_migrations_online() -> None:
    asyncio.run(run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
