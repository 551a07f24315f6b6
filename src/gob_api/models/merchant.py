"""Merchant tenants and their physical business locations."""

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
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from gob_api.db.base import Base


class MerchantPlan(str, Enum):
    """Subscription plans controlling reward catalog limits."""

    STARTER = "STARTER"
    BASIC = "BASIC"
    PREMIUM = "PREMIUM"
    GROWTH = "GROWTH"
    PRO = "PRO"


class Merchant(Base):
    """Tenant account owning rewards, tier thresholds, and payout settings."""

    __tablename__ = "merchants"
    __table_args__ = (
        CheckConstraint(
            "payout_budget_reset_day IS NULL OR (payout_budget_reset_day BETWEEN 1 AND 28)",
            name="payout_budget_reset_day_range",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    plan = Column(
        SqlEnum(MerchantPlan, name="merchant_plan"),
        nullable=False,
        default=MerchantPlan.STARTER,
        server_default=MerchantPlan.STARTER.value,
    )
    vip_threshold = Column(Integer, nullable=False, default=100, server_default="100")
    super_threshold = Column(Integer, nullable=False, default=500, server_default="500")

    payout_enabled = Column(Boolean, nullable=False, default=False, server_default="false")
    payout_wallet_address = Column(String, nullable=True)
    payout_milestone_points = Column(Integer, nullable=False, default=100, server_default="100")
    payout_amount_usd = Column(Numeric(12, 2), nullable=False, default=5, server_default="5")
    monthly_payout_budget = Column(Numeric(12, 2), nullable=True)
    payout_budget_reset_day = Column(Integer, nullable=True)
    current_month_payouts = Column(Numeric(12, 2), nullable=False, default=0, server_default="0")
    last_budget_reset_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    businesses = relationship(
        "Business",
        back_populates="merchant",
        cascade="all, delete-orphan",
        order_by="Business.created_at",
    )
    rewards = relationship("Reward", back_populates="merchant", cascade="all, delete-orphan")
    members = relationship("MerchantMember", back_populates="merchant", cascade="all, delete-orphan")


class Business(Base):
    """Physical location operated by a merchant."""

    __tablename__ = "businesses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    location_nickname = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="businesses")
