"""Create payment_transfers table.

Revision ID: 004
Revises: 003
Create Date: 2026-10-08
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "payment_transfers",
        sa.Column("transfer_id", sa.Uuid(), primary_key=True),
        sa.Column("idempotency_key", sa.String(128), unique=True, nullable=False),
        sa.Column("kind", sa.Enum("disbursement", "refund", name="transferkind"), nullable=False),
        sa.Column("reference_id", sa.Uuid(), nullable=False),
        sa.Column("recipient_id", sa.Uuid(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "succeeded", "failed", name="transferstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("gateway_transaction_id", sa.String(128), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("gateway_response", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_payment_transfers_reference_id", "payment_transfers", ["reference_id"])
    op.create_index(
        "ix_payment_transfers_gateway_transaction_id", "payment_transfers", ["gateway_transaction_id"],
    )


def downgrade() -> None:
    op.drop_table("payment_transfers")
    op.execute("DROP TYPE IF EXISTS transferstatus")
    op.execute("DROP TYPE IF EXISTS transferkind")
