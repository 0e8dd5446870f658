"""Create refund_cases, recovery_cases and webhook_deliveries tables.

Revision ID: 005
Revises: 004
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "005"
down_revision: Union[str, None] = "004"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "refund_cases",
        sa.Column("refund_id", sa.Uuid(), primary_key=True),
        sa.Column("campaign_id", sa.Uuid(), sa.ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("donor_id", sa.Uuid(), nullable=False),
        sa.Column("donation_id", sa.Uuid(), sa.ForeignKey("donations.donation_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("original_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("refunded_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("paid_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("refund_ratio", sa.Numeric(12, 10), nullable=False),
        sa.Column("remaining_refund", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "refund_status",
            sa.Enum("pending", "completed", "failed", "partial", name="refundstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("refund_method", sa.Enum("escrow", "recovery", name="refundmethod"), nullable=False),
        sa.Column("refund_transaction_id", sa.String(128), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("donation_id", "refund_method", name="uq_refund_cases_donation_method"),
    )
    op.create_index("ix_refund_cases_campaign_id", "refund_cases", ["campaign_id"])
    op.create_index("ix_refund_cases_donor_id", "refund_cases", ["donor_id"])

    op.create_table(
        "recovery_cases",
        sa.Column("recovery_case_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "campaign_id", sa.Uuid(),
            sa.ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), unique=True, nullable=False,
        ),
        sa.Column("creator_id", sa.Uuid(), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("recovered_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("distributed_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "status",
            sa.Enum("pending", "in_progress", "completed", "failed", name="recoverystatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("timeline", JSONB, nullable=True),
        sa.Column("created_by", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_recovery_cases_creator_id", "recovery_cases", ["creator_id"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column("target_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "delivered", "failed", name="webhookstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("webhook_deliveries")
    op.drop_table("recovery_cases")
    op.drop_table("refund_cases")
    op.execute("DROP TYPE IF EXISTS webhookstatus")
    op.execute("DROP TYPE IF EXISTS recoverystatus")
    op.execute("DROP TYPE IF EXISTS refundmethod")
    op.execute("DROP TYPE IF EXISTS refundstatus")
