"""Create campaigns and donations tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-05
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "campaigns",
        sa.Column("campaign_id", sa.Uuid(), primary_key=True),
        sa.Column("creator_id", sa.Uuid(), nullable=False),
        sa.Column("title", sa.String(256), nullable=False, server_default=""),
        sa.Column("goal_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("current_amount", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column("total_raised", sa.Numeric(14, 2), nullable=False, server_default="0.00"),
        sa.Column(
            "status",
            sa.Enum("draft", "pending", "active", "completed", "cancelled", name="campaignstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_campaigns_creator_id", "campaigns", ["creator_id"])

    op.create_table(
        "donations",
        sa.Column("donation_id", sa.Uuid(), primary_key=True),
        sa.Column("campaign_id", sa.Uuid(), sa.ForeignKey("campaigns.campaign_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("donor_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "refunded", "partially_refunded", name="donationstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_donations_campaign_donor_status", "donations", ["campaign_id", "donor_id", "status"],
    )


def downgrade() -> None:
    op.drop_table("donations")
    op.drop_table("campaigns")
    op.execute("DROP TYPE IF EXISTS donationstatus")
    op.execute("DROP TYPE IF EXISTS campaignstatus")
