"""Payout settlement claim and one live payout per redemption.

Revision ID: 20260301_02
Revises: 20260101_01
Create Date: 2026-03-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20260301_02"
down_revision: Union[str, None] = "20260101_01"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        "reward_transactions",
        sa.Column("settle_started_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "uq_reward_transactions_live_redemption_payout",
        "reward_transactions",
        ["redemption_id"],
        unique=True,
        postgresql_where=sa.text("type = 'PAYOUT' AND status IN ('PENDING', 'SUCCESS')"),
    )


def downgrade() -> None:
    op.drop_index("uq_reward_transactions_live_redemption_payout", table_name="reward_transactions")
    op.drop_column("reward_transactions", "settle_started_at")
