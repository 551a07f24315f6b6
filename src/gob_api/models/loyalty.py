"""Reward catalog, redemption requests, and the append-only transaction log."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from gob_api.db.base import Base, utcnow


class RewardKind(str, Enum):
    """How a reward is fulfilled."""

    TRADITIONAL = "TRADITIONAL"
    USDC_PAYOUT = "USDC_PAYOUT"


class Reward(Base):
    """Catalog item a member can redeem points for."""

    __tablename__ = "rewards"
    __table_args__ = (
        CheckConstraint("points_cost > 0", name="points_cost_positive"),
        CheckConstraint(
            "(reward_type = 'USDC_PAYOUT') = (usdc_amount IS NOT NULL)",
            name="usdc_amount_matches_type",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    reward_type = Column(
        SqlEnum(RewardKind, name="reward_kind"),
        nullable=False,
        default=RewardKind.TRADITIONAL,
        server_default=RewardKind.TRADITIONAL.value,
    )
    usdc_amount = Column(Numeric(12, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="rewards")


class RedemptionStatus(str, Enum):
    """Redemption request lifecycle; everything except PENDING is terminal."""

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_REDEMPTION_STATUSES = (
    RedemptionStatus.CONFIRMED,
    RedemptionStatus.DECLINED,
    RedemptionStatus.CANCELLED,
    RedemptionStatus.EXPIRED,
)


class RedemptionRequest(Base):
    """Time-boxed, QR-tokenized intent to redeem one reward."""

    __tablename__ = "redemption_requests"
    __table_args__ = (
        Index(
            "uq_redemption_requests_pending_member_reward",
            "member_id",
            "merchant_id",
            "reward_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
        Index("ix_redemption_requests_merchant_status", "merchant_id", "status"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id", ondelete="CASCADE"), nullable=False)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True)
    qr_code_hash = Column(String(64), nullable=False, unique=True)
    status = Column(
        SqlEnum(RedemptionStatus, name="redemption_status"),
        nullable=False,
        default=RedemptionStatus.PENDING,
        server_default=RedemptionStatus.PENDING.value,
    )
    points_cost = Column(Integer, nullable=False)
    usdc_cost = Column(Numeric(12, 2), nullable=True)
    member_note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by_staff_id = Column(String, nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    decline_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    member = relationship("Member")
    reward = relationship("Reward")
    business = relationship("Business")


class TransactionType(str, Enum):
    """Kinds of ledger events."""

    EARN = "EARN"
    REDEEM = "REDEEM"
    ADJUST = "ADJUST"
    PAYOUT = "PAYOUT"


class TransactionStatus(str, Enum):
    """Settlement status; only PAYOUT rows are ever PENDING."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class RewardTransaction(Base):
    """Append-only record of a balance-affecting or payout event.

    ``amount`` holds the points magnitude for EARN and REDEEM rows and the
    signed delta for ADJUST rows. PAYOUT rows carry the points they consumed
    in ``points_deducted`` (zero for payouts attached to a redemption).
    A redemption has at most one PENDING or SUCCESS payout at a time.
    """

    __tablename__ = "reward_transactions"
    __table_args__ = (
        Index("ix_reward_transactions_merchant_member_created", "merchant_member_id", "created_at"),
        Index("ix_reward_transactions_type_status", "type", "status"),
        Index(
            "uq_reward_transactions_live_redemption_payout",
            "redemption_id",
            unique=True,
            postgresql_where=text("type = 'PAYOUT' AND status IN ('PENDING', 'SUCCESS')"),
            sqlite_where=text("type = 'PAYOUT' AND status IN ('PENDING', 'SUCCESS')"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_member_id = Column(
        UUID(as_uuid=True),
        ForeignKey("merchant_members.id", ondelete="CASCADE"),
        nullable=False,
    )
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True)
    redemption_id = Column(
        UUID(as_uuid=True),
        ForeignKey("redemption_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    type = Column(SqlEnum(TransactionType, name="reward_transaction_type"), nullable=False)
    amount = Column(Integer, nullable=False, default=0, server_default="0")
    points_deducted = Column(Integer, nullable=True)
    usdc_amount = Column(Numeric(12, 2), nullable=True)
    reason = Column(String, nullable=True)
    status = Column(
        SqlEnum(TransactionStatus, name="reward_transaction_status"),
        nullable=False,
        default=TransactionStatus.SUCCESS,
        server_default=TransactionStatus.SUCCESS.value,
    )
    tx_hash = Column(String, nullable=True)
    wallet_address = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    settle_started_at = Column(DateTime(timezone=True), nullable=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    merchant_member = relationship("MerchantMember", back_populates="transactions")
    member = relationship("Member")
    business = relationship("Business")
