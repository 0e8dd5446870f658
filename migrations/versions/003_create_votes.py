"""Create votes table.

Revision ID: 003
Revises: 002
Create Date: 2026-10-06
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "003"
down_revision: Union[str, None] = "002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "votes",
        sa.Column("vote_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("withdrawal_requests.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("donor_id", sa.Uuid(), nullable=False),
        sa.Column("value", sa.Enum("approve", "reject", name="votevalue"), nullable=False),
        sa.Column("weight", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("escrow_id", "donor_id", name="uq_votes_escrow_donor"),
    )


def downgrade() -> None:
    op.drop_table("votes")
    op.execute("DROP TYPE IF EXISTS votevalue")
