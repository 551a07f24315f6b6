"""Model exports for Alembic metadata discovery."""

from .loyalty import (  # noqa: F401
    RedemptionRequest,
    RedemptionStatus,
    Reward,
    RewardKind,
    RewardTransaction,
    TERMINAL_REDEMPTION_STATUSES,
    TransactionStatus,
    TransactionType,
)
from .member import BusinessMember, Member, MemberTier, MerchantMember  # noqa: F401
from .merchant import Business, Merchant, MerchantPlan  # noqa: F401
