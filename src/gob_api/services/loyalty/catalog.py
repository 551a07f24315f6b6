"""Plan-based reward greying shared by catalog display and redemption creation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.db.base import ensure_aware
from gob_api.models.loyalty import Reward
from gob_api.models.merchant import Merchant, MerchantPlan

from .errors import NotFound, PlanRestricted, RewardUnavailable


UNLIMITED = -1

# Number of active rewards a plan may offer; -1 means no cap.
PLAN_REWARD_LIMITS: dict[MerchantPlan, int] = {
    MerchantPlan.STARTER: 3,
    MerchantPlan.BASIC: 10,
    MerchantPlan.PREMIUM: UNLIMITED,
    MerchantPlan.GROWTH: UNLIMITED,
    MerchantPlan.PRO: UNLIMITED,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def get_reward_limit(plan: MerchantPlan | str | None) -> int:
    try:
        resolved = MerchantPlan(plan) if plan is not None else MerchantPlan.STARTER
    except ValueError:
        resolved = MerchantPlan.STARTER
    return PLAN_REWARD_LIMITS.get(resolved, PLAN_REWARD_LIMITS[MerchantPlan.STARTER])


@dataclass(frozen=True)
class RewardVisibility:
    active_reward_ids: list[UUID] = field(default_factory=list)
    greyed_reward_ids: list[UUID] = field(default_factory=list)
    limit: int = UNLIMITED
    is_unlimited: bool = True

    def is_greyed(self, reward_id: UUID) -> bool:
        return reward_id in self.greyed_reward_ids

    def as_dict(self) -> dict[str, object]:
        return {
            "activeRewardIds": [str(reward_id) for reward_id in self.active_reward_ids],
            "greyedRewardIds": [str(reward_id) for reward_id in self.greyed_reward_ids],
            "limit": self.limit,
            "isUnlimited": self.is_unlimited,
        }


def order_rewards(rewards: Iterable[Reward]) -> list[Reward]:
    """Catalog order: sort order, then cheapest first, then oldest first."""

    return sorted(
        rewards,
        key=lambda reward: (
            int(reward.sort_order or 0),
            int(reward.points_cost or 0),
            ensure_aware(reward.created_at) if reward.created_at else _EPOCH,
            str(reward.id),
        ),
    )


def resolve_reward_visibility(plan: MerchantPlan | str | None, rewards: Sequence[Reward]) -> RewardVisibility:
    """Split active rewards into redeemable and greyed for a plan.

    Pure function of the plan and reward list. Inactive rewards appear in
    neither list.
    """

    limit = get_reward_limit(plan)
    ordered = [reward.id for reward in order_rewards(reward for reward in rewards if reward.is_active)]
    if limit == UNLIMITED:
        return RewardVisibility(active_reward_ids=ordered, greyed_reward_ids=[], limit=UNLIMITED, is_unlimited=True)
    return RewardVisibility(
        active_reward_ids=ordered[:limit],
        greyed_reward_ids=ordered[limit:],
        limit=limit,
        is_unlimited=False,
    )


@dataclass
class CatalogEntry:
    reward: Reward
    is_greyed: bool


class RewardCatalogGate:
    """Answers whether a reward is redeemable right now under the merchant's plan."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def _get_merchant(self, merchant_id: UUID) -> Merchant:
        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFound("Merchant not found", merchant_id=str(merchant_id))
        return merchant

    async def _list_active_rewards(self, merchant_id: UUID) -> list[Reward]:
        stmt = select(Reward).where(Reward.merchant_id == merchant_id, Reward.is_active.is_(True))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_reward_visibility(self, merchant_id: UUID) -> RewardVisibility:
        merchant = await self._get_merchant(merchant_id)
        rewards = await self._list_active_rewards(merchant_id)
        visibility = resolve_reward_visibility(merchant.plan, rewards)
        logger.debug(
            "Resolved reward visibility",
            merchant_id=str(merchant_id),
            active=len(visibility.active_reward_ids),
            greyed=len(visibility.greyed_reward_ids),
        )
        return visibility

    async def list_catalog(self, merchant_id: UUID) -> list[CatalogEntry]:
        merchant = await self._get_merchant(merchant_id)
        rewards = await self._list_active_rewards(merchant_id)
        visibility = resolve_reward_visibility(merchant.plan, rewards)
        return [
            CatalogEntry(reward=reward, is_greyed=visibility.is_greyed(reward.id))
            for reward in order_rewards(rewards)
        ]

    async def require_redeemable(self, merchant_id: UUID, reward_id: UUID) -> Reward:
        """Load a reward and fail unless it can be redeemed at this merchant now."""

        reward = await self._db.get(Reward, reward_id)
        if reward is None or reward.merchant_id != merchant_id:
            raise NotFound("Reward not found", reward_id=str(reward_id))
        if not reward.is_active:
            raise RewardUnavailable(reward_id=str(reward_id))

        visibility = await self.get_reward_visibility(merchant_id)
        if visibility.is_greyed(reward.id):
            raise PlanRestricted(
                "This reward is not available on the current plan. Please contact the business.",
                reward_id=str(reward_id),
                limit=visibility.limit,
            )
        return reward


__all__ = [
    "CatalogEntry",
    "PLAN_REWARD_LIMITS",
    "RewardCatalogGate",
    "RewardVisibility",
    "UNLIMITED",
    "get_reward_limit",
    "order_rewards",
    "resolve_reward_visibility",
]
