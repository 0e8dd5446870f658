"""Create withdrawal_requests and escrow_audit_log tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NON_TERMINAL = (
    "request_status IN ('admin_approved', 'pending_voting', 'voting_completed', 'voting_in_progress')"
)


def upgrade() -> None:
    op.create_table(
        "withdrawal_requests",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("campaign_id", sa.Uuid(), sa.ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("requested_by", sa.Uuid(), nullable=False),
        sa.Column("withdrawal_request_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("request_reason", sa.Text(), nullable=False),
        sa.Column(
            "request_status",
            sa.Enum(
                "pending_voting", "voting_in_progress", "voting_completed", "admin_approved",
                "admin_rejected", "rejected_by_community", "released", "cancelled",
                name="withdrawalstatus",
            ),
            nullable=False,
            server_default="pending_voting",
        ),
        sa.Column("voting_start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("voting_extended_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("voting_extended_by", sa.Uuid(), nullable=True),
        sa.Column("last_extended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("milestone_percentage", sa.Integer(), nullable=True),
        sa.Column("admin_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_reviewed_by", sa.Uuid(), nullable=True),
        sa.Column("admin_rejection_reason", sa.Text(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("community_rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_withdrawal_requests_campaign_id", "withdrawal_requests", ["campaign_id"])
    op.create_index(
        "ix_withdrawal_requests_status_end", "withdrawal_requests", ["request_status", "voting_end_date"],
    )
    op.create_index(
        "uq_withdrawal_requests_one_active_per_campaign",
        "withdrawal_requests",
        ["campaign_id"],
        unique=True,
        postgresql_where=sa.text(NON_TERMINAL),
    )

    op.create_table(
        "escrow_audit_log",
        sa.Column("escrow_audit_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("withdrawal_requests.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "voting_started", "voting_extended", "voting_closed", "admin_approved",
                "admin_rejected", "release_initiated", "released", "cancelled",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("from_status", sa.Text(), nullable=True),
        sa.Column("to_status", sa.Text(), nullable=True),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_escrow_audit_log_escrow_id", "escrow_audit_log", ["escrow_id"])


def downgrade() -> None:
    op.drop_table("escrow_audit_log")
    op.drop_table("withdrawal_requests")
    op.execute("DROP TYPE IF EXISTS escrowaction")
    op.execute("DROP TYPE IF EXISTS withdrawalstatus")
