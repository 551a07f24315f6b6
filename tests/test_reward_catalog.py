from uuid import uuid4

import pytest

from factories import seed_merchant, seed_reward
from gob_api.models.loyalty import Reward
from gob_api.models.merchant import MerchantPlan
from gob_api.services.loyalty import RewardCatalogGate, resolve_reward_visibility
from gob_api.services.loyalty.catalog import get_reward_limit
from gob_api.services.loyalty.errors import NotFound, PlanRestricted, RewardUnavailable


def _reward(points_cost: int, *, sort_order: int = 0, is_active: bool = True) -> Reward:
    return Reward(
        id=uuid4(),
        merchant_id=uuid4(),
        name=f"Reward {points_cost}",
        points_cost=points_cost,
        sort_order=sort_order,
        is_active=is_active,
    )


def test_plan_limits() -> None:
    assert get_reward_limit(MerchantPlan.STARTER) == 3
    assert get_reward_limit(MerchantPlan.BASIC) == 10
    assert get_reward_limit(MerchantPlan.PRO) == -1
    assert get_reward_limit("NOT_A_PLAN") == 3
    assert get_reward_limit(None) == 3


def test_visibility_greys_rewards_past_the_plan_limit() -> None:
    rewards = [_reward(cost) for cost in (500, 100, 300, 200, 400)]

    visibility = resolve_reward_visibility(MerchantPlan.STARTER, rewards)

    costs = {reward.id: reward.points_cost for reward in rewards}
    assert [costs[reward_id] for reward_id in visibility.active_reward_ids] == [100, 200, 300]
    assert [costs[reward_id] for reward_id in visibility.greyed_reward_ids] == [400, 500]
    assert visibility.limit == 3
    assert not visibility.is_unlimited


def test_visibility_respects_sort_order_before_cost() -> None:
    pinned = _reward(900, sort_order=-1)
    cheap = _reward(50)
    inactive = _reward(10, is_active=False)

    visibility = resolve_reward_visibility(MerchantPlan.STARTER, [cheap, pinned, inactive])

    assert visibility.active_reward_ids == [pinned.id, cheap.id]
    assert inactive.id not in visibility.active_reward_ids
    assert inactive.id not in visibility.greyed_reward_ids


def test_unlimited_plan_greys_nothing() -> None:
    rewards = [_reward(cost) for cost in range(100, 1600, 100)]

    visibility = resolve_reward_visibility(MerchantPlan.GROWTH, rewards)

    assert len(visibility.active_reward_ids) == 15
    assert visibility.greyed_reward_ids == []
    assert visibility.as_dict()["isUnlimited"] is True


@pytest.mark.asyncio
async def test_catalog_lists_greyed_entries_and_blocks_redemption(session_factory) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session, plan=MerchantPlan.STARTER)
        rewards = [
            await seed_reward(session, merchant, name=f"Reward {cost}", points_cost=cost)
            for cost in (100, 200, 300, 400)
        ]
        await session.commit()

        gate = RewardCatalogGate(session)
        entries = await gate.list_catalog(merchant.id)
        assert [(entry.reward.points_cost, entry.is_greyed) for entry in entries] == [
            (100, False),
            (200, False),
            (300, False),
            (400, True),
        ]

        assert (await gate.require_redeemable(merchant.id, rewards[0].id)).id == rewards[0].id
        with pytest.raises(PlanRestricted):
            await gate.require_redeemable(merchant.id, rewards[3].id)


@pytest.mark.asyncio
async def test_upgrading_plan_ungreys_rewards(session_factory) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session, plan=MerchantPlan.STARTER)
        for cost in (100, 200, 300, 400):
            await seed_reward(session, merchant, name=f"Reward {cost}", points_cost=cost)
        await session.commit()

        merchant.plan = MerchantPlan.BASIC
        await session.commit()

        visibility = await RewardCatalogGate(session).get_reward_visibility(merchant.id)
        assert len(visibility.active_reward_ids) == 4
        assert visibility.greyed_reward_ids == []


@pytest.mark.asyncio
async def test_require_redeemable_rejects_inactive_and_foreign_rewards(session_factory) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session)
        other = await seed_merchant(session, slug="other-shop")
        retired = await seed_reward(session, merchant, name="Retired", is_active=False)
        foreign = await seed_reward(session, other, name="Elsewhere")
        await session.commit()

        gate = RewardCatalogGate(session)
        with pytest.raises(RewardUnavailable):
            await gate.require_redeemable(merchant.id, retired.id)
        with pytest.raises(NotFound):
            await gate.require_redeemable(merchant.id, foreign.id)
        with pytest.raises(NotFound):
            await gate.list_catalog(uuid4())
