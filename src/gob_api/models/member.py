"""Members and their merchant- and location-scoped relationships."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from gob_api.db.base import Base


class MemberTier(str, Enum):
    """Points-derived status levels."""

    BASE = "BASE"
    VIP = "VIP"
    SUPER = "SUPER"


class Member(Base):
    """A customer, unique by email or wallet address across all merchants."""

    __tablename__ = "members"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    email = Column(String, nullable=True, unique=True, index=True)
    wallet_address = Column(String, nullable=True, unique=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    memberships = relationship("MerchantMember", back_populates="member", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str | None:
        full_name = " ".join(part for part in (self.first_name, self.last_name) if part).strip()
        return full_name or self.email


class MerchantMember(Base):
    """Authoritative points balance and tier for one member at one merchant."""

    __tablename__ = "merchant_members"
    __table_args__ = (
        UniqueConstraint("merchant_id", "member_id", name="uq_merchant_members_merchant_member"),
        CheckConstraint("points >= 0", name="points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    merchant_id = Column(UUID(as_uuid=True), ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    points = Column(Integer, nullable=False, default=0, server_default="0")
    tier = Column(
        SqlEnum(MemberTier, name="member_tier"),
        nullable=False,
        default=MemberTier.BASE,
        server_default=MemberTier.BASE.value,
    )
    member_note = Column(Text, nullable=True)
    referral_code = Column(String, nullable=True, unique=True)
    last_birthday_claim_year = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    merchant = relationship("Merchant", back_populates="members")
    member = relationship("Member", back_populates="memberships")
    transactions = relationship("RewardTransaction", back_populates="merchant_member")


class BusinessMember(Base):
    """Location-scoped visit projection; never holds points."""

    __tablename__ = "business_members"
    __table_args__ = (
        UniqueConstraint("business_id", "member_id", name="uq_business_members_business_member"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    business_id = Column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    visit_count = Column(Integer, nullable=False, default=0, server_default="0")
    redemption_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
