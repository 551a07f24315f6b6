"""Row builders shared by the rewards tests."""

from datetime import timedelta
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.db.base import utcnow
from gob_api.models.loyalty import Reward, RewardKind
from gob_api.models.member import Member, MemberTier, MerchantMember
from gob_api.models.merchant import Business, Merchant, MerchantPlan


async def seed_merchant(
    session: AsyncSession,
    *,
    slug: str = "corner-cafe",
    plan: MerchantPlan = MerchantPlan.PRO,
    payout_enabled: bool = False,
    payout_wallet_address: str | None = None,
    with_business: bool = True,
    **overrides,
) -> Merchant:
    merchant = Merchant(
        slug=slug,
        name=slug.replace("-", " ").title(),
        plan=plan,
        vip_threshold=100,
        super_threshold=500,
        payout_enabled=payout_enabled,
        payout_wallet_address=payout_wallet_address,
        payout_milestone_points=100,
        payout_amount_usd=Decimal("5.00"),
        current_month_payouts=Decimal("0"),
        **overrides,
    )
    session.add(merchant)
    await session.flush()
    if with_business:
        session.add(Business(merchant_id=merchant.id, name=f"{merchant.name} Main Street"))
        await session.flush()
    return merchant


async def seed_member(
    session: AsyncSession,
    merchant: Merchant | None = None,
    *,
    email: str = "member@example.com",
    points: int = 0,
    wallet_address: str | None = None,
) -> Member:
    member = Member(email=email, first_name="Riley", last_name="Stone", wallet_address=wallet_address)
    session.add(member)
    await session.flush()
    if merchant is not None:
        tier = MemberTier.SUPER if points >= 500 else MemberTier.VIP if points >= 100 else MemberTier.BASE
        session.add(MerchantMember(merchant_id=merchant.id, member_id=member.id, points=points, tier=tier))
        await session.flush()
    return member


async def seed_reward(
    session: AsyncSession,
    merchant: Merchant,
    *,
    name: str = "Free Coffee",
    points_cost: int = 100,
    usdc_amount: Decimal | None = None,
    sort_order: int = 0,
    is_active: bool = True,
    created_offset_seconds: int = 0,
) -> Reward:
    reward = Reward(
        merchant_id=merchant.id,
        name=name,
        points_cost=points_cost,
        reward_type=RewardKind.USDC_PAYOUT if usdc_amount is not None else RewardKind.TRADITIONAL,
        usdc_amount=usdc_amount,
        sort_order=sort_order,
        is_active=is_active,
        created_at=utcnow() + timedelta(seconds=created_offset_seconds),
    )
    session.add(reward)
    await session.flush()
    return reward
