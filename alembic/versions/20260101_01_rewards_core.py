"""Rewards core tables: merchants, members, rewards, redemptions, transactions.

Revision ID: 20260101_01
Revises:
Create Date: 2026-01-01
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20260101_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(name=name, create_type=False)


def upgrade() -> None:
    op.execute("CREATE TYPE merchant_plan AS ENUM ('STARTER', 'BASIC', 'PREMIUM', 'GROWTH', 'PRO')")
    op.execute("CREATE TYPE member_tier AS ENUM ('BASE', 'VIP', 'SUPER')")
    op.execute("CREATE TYPE reward_kind AS ENUM ('TRADITIONAL', 'USDC_PAYOUT')")
    op.execute("CREATE TYPE redemption_status AS ENUM ('PENDING', 'CONFIRMED', 'DECLINED', 'CANCELLED', 'EXPIRED')")
    op.execute("CREATE TYPE reward_transaction_type AS ENUM ('EARN', 'REDEEM', 'ADJUST', 'PAYOUT')")
    op.execute("CREATE TYPE reward_transaction_status AS ENUM ('SUCCESS', 'FAILED', 'PENDING')")

    op.create_table(
        "merchants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("plan", _enum("merchant_plan"), nullable=False, server_default="STARTER"),
        sa.Column("vip_threshold", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("super_threshold", sa.Integer(), nullable=False, server_default="500"),
        sa.Column("payout_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("payout_wallet_address", sa.String(), nullable=True),
        sa.Column("payout_milestone_points", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("payout_amount_usd", sa.Numeric(12, 2), nullable=False, server_default="5"),
        sa.Column("monthly_payout_budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("payout_budget_reset_day", sa.Integer(), nullable=True),
        sa.Column("current_month_payouts", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("last_budget_reset_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "payout_budget_reset_day IS NULL OR (payout_budget_reset_day BETWEEN 1 AND 28)",
            name="ck_merchants_payout_budget_reset_day_range",
        ),
    )
    op.create_index("ix_merchants_slug", "merchants", ["slug"], unique=True)

    op.create_table(
        "businesses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("location_nickname", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"], ondelete="CASCADE"),
    )
    op.create_index("ix_businesses_merchant_id", "businesses", ["merchant_id"])

    op.create_table(
        "members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("wallet_address", sa.String(), nullable=True, unique=True),
        sa.Column("first_name", sa.String(), nullable=True),
        sa.Column("last_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_members_email", "members", ["email"], unique=True)

    op.create_table(
        "merchant_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("member_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("tier", _enum("member_tier"), nullable=False, server_default="BASE"),
        sa.Column("member_note", sa.Text(), nullable=True),
        sa.Column("referral_code", sa.String(), nullable=True, unique=True),
        sa.Column("last_birthday_claim_year", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("merchant_id", "member_id", name="uq_merchant_members_merchant_member"),
        sa.CheckConstraint("points >= 0", name="ck_merchant_members_points_non_negative"),
    )
    op.create_index("ix_merchant_members_member_id", "merchant_members", ["member_id"])

    op.create_table(
        "business_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("member_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("visit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("redemption_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("business_id", "member_id", name="uq_business_members_business_member"),
    )
    op.create_index("ix_business_members_member_id", "business_members", ["member_id"])

    op.create_table(
        "rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("reward_type", _enum("reward_kind"), nullable=False, server_default="TRADITIONAL"),
        sa.Column("usdc_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"], ondelete="CASCADE"),
        sa.CheckConstraint("points_cost > 0", name="ck_rewards_points_cost_positive"),
        sa.CheckConstraint(
            "(reward_type = 'USDC_PAYOUT') = (usdc_amount IS NOT NULL)",
            name="ck_rewards_usdc_amount_matches_type",
        ),
    )
    op.create_index("ix_rewards_merchant_id", "rewards", ["merchant_id"])

    op.create_table(
        "redemption_requests",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("member_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("reward_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("qr_code_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("status", _enum("redemption_status"), nullable=False, server_default="PENDING"),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("usdc_cost", sa.Numeric(12, 2), nullable=True),
        sa.Column("member_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("confirmed_by_staff_id", sa.String(), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("decline_reason", sa.String(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reward_id"], ["rewards.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="SET NULL"),
    )
    op.create_index(
        "uq_redemption_requests_pending_member_reward",
        "redemption_requests",
        ["member_id", "merchant_id", "reward_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )
    op.create_index("ix_redemption_requests_merchant_status", "redemption_requests", ["merchant_id", "status"])

    op.create_table(
        "reward_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("merchant_member_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("merchant_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("member_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("business_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("redemption_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("type", _enum("reward_transaction_type"), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("points_deducted", sa.Integer(), nullable=True),
        sa.Column("usdc_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("status", _enum("reward_transaction_status"), nullable=False, server_default="SUCCESS"),
        sa.Column("tx_hash", sa.String(), nullable=True),
        sa.Column("wallet_address", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.ForeignKeyConstraint(["merchant_member_id"], ["merchant_members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["merchant_id"], ["merchants.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["member_id"], ["members.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["business_id"], ["businesses.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["redemption_id"], ["redemption_requests.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_reward_transactions_merchant_id", "reward_transactions", ["merchant_id"])
    op.create_index("ix_reward_transactions_redemption_id", "reward_transactions", ["redemption_id"])
    op.create_index(
        "ix_reward_transactions_merchant_member_created",
        "reward_transactions",
        ["merchant_member_id", "created_at"],
    )
    op.create_index("ix_reward_transactions_type_status", "reward_transactions", ["type", "status"])


def downgrade() -> None:
    op.drop_table("reward_transactions")
    op.drop_index("uq_redemption_requests_pending_member_reward", table_name="redemption_requests")
    op.drop_table("redemption_requests")
    op.drop_table("rewards")
    op.drop_table("business_members")
    op.drop_table("merchant_members")
    op.drop_table("members")
    op.drop_table("businesses")
    op.drop_table("merchants")

    op.execute("DROP TYPE IF EXISTS reward_transaction_status")
    op.execute("DROP TYPE IF EXISTS reward_transaction_type")
    op.execute("DROP TYPE IF EXISTS redemption_status")
    op.execute("DROP TYPE IF EXISTS reward_kind")
    op.execute("DROP TYPE IF EXISTS member_tier")
    op.execute("DROP TYPE IF EXISTS merchant_plan")
