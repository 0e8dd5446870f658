"""Add legal escalation to recovery cases and aggregate ids to webhook deliveries.

Revision ID: 006
Revises: 005
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "006"
down_revision: Union[str, None] = "005"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("ALTER TYPE recoverystatus ADD VALUE IF NOT EXISTS 'legal_action'")
    op.add_column("recovery_cases", sa.Column("legal_case_id", sa.String(128), nullable=True))
    op.add_column("recovery_cases", sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True))

    op.add_column("webhook_deliveries", sa.Column("campaign_id", sa.Uuid(), nullable=True))
    op.add_column("webhook_deliveries", sa.Column("escrow_id", sa.Uuid(), nullable=True))
    op.create_index("ix_webhook_deliveries_campaign_id", "webhook_deliveries", ["campaign_id"])
    op.create_index("ix_webhook_deliveries_escrow_id", "webhook_deliveries", ["escrow_id"])


def downgrade() -> None:
    op.drop_index("ix_webhook_deliveries_escrow_id", table_name="webhook_deliveries")
    op.drop_index("ix_webhook_deliveries_campaign_id", table_name="webhook_deliveries")
    op.drop_column("webhook_deliveries", "escrow_id")
    op.drop_column("webhook_deliveries", "campaign_id")
    op.drop_column("recovery_cases", "escalated_at")
    op.drop_column("recovery_cases", "legal_case_id")
    # Postgres cannot drop an enum value; rows escalated to legal_action must be moved first
    op.execute("UPDATE recovery_cases SET status = 'failed' WHERE status = 'legal_action'")
