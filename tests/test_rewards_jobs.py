"""Tests for rewards maintenance jobs."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from factories import seed_member, seed_merchant, seed_reward
from gob_api.core.settings import settings
from gob_api.db.base import utcnow
from gob_api.jobs import expire_stale_redemptions, roll_payout_budgets
from gob_api.models.loyalty import RedemptionRequest, RedemptionStatus
from gob_api.models.merchant import Merchant
from gob_api.observability.redemptions import get_redemption_store
from gob_api.services.loyalty.redemptions import RedemptionService


async def _pending_redemptions(session_factory, *, stale: int, fresh: int) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session)
        for index in range(stale + fresh):
            member = await seed_member(session, merchant, email=f"member{index}@example.com", points=200)
            reward = await seed_reward(session, merchant, name=f"Reward {index}")
            await session.commit()
            result = await RedemptionService(session).create_redemption_request(member.id, merchant.id, reward.id)
            assert result.ok
            if index < stale:
                await session.execute(
                    update(RedemptionRequest)
                    .where(RedemptionRequest.id == result.value.redemption.id)
                    .values(expires_at=utcnow() - timedelta(minutes=1))
                )
                await session.commit()


@pytest.mark.asyncio
async def test_sweeper_expires_only_lapsed_requests(session_factory) -> None:
    await _pending_redemptions(session_factory, stale=2, fresh=1)

    summary = await expire_stale_redemptions(session_factory=session_factory)
    assert summary == {"expired": 2, "skipped": False}

    again = await expire_stale_redemptions(session_factory=session_factory)
    assert again == {"expired": 0, "skipped": False}

    async with session_factory() as session:
        statuses = (await session.execute(select(RedemptionRequest.status))).scalars().all()
    assert sorted(status.value for status in statuses) == ["EXPIRED", "EXPIRED", "PENDING"]
    assert get_redemption_store().snapshot().transitions["expired"] == 2


@pytest.mark.asyncio
async def test_sweeper_honours_batch_size(session_factory) -> None:
    await _pending_redemptions(session_factory, stale=3, fresh=0)

    first = await expire_stale_redemptions(session_factory=session_factory, batch_size=2)
    second = await expire_stale_redemptions(session_factory=session_factory, batch_size=2)

    assert first["expired"] == 2
    assert second["expired"] == 1


@pytest.mark.asyncio
async def test_sweeper_can_be_disabled(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "redemption_sweeper_enabled", False)
    await _pending_redemptions(session_factory, stale=1, fresh=0)

    summary = await expire_stale_redemptions(session_factory=session_factory)

    assert summary == {"expired": 0, "skipped": True}
    async with session_factory() as session:
        status = (await session.execute(select(RedemptionRequest.status))).scalar_one()
    assert status == RedemptionStatus.PENDING


@pytest.mark.asyncio
async def test_budget_rollover_resets_lapsed_windows(session_factory) -> None:
    async with session_factory() as session:
        lapsed = await seed_merchant(session, slug="lapsed-shop")
        lapsed.monthly_payout_budget = Decimal("100")
        lapsed.payout_budget_reset_day = 1
        lapsed.current_month_payouts = Decimal("80")
        lapsed.last_budget_reset_at = utcnow() - timedelta(days=40)
        unbudgeted = await seed_merchant(session, slug="open-shop")
        unbudgeted.current_month_payouts = Decimal("12")
        await session.commit()
        lapsed_id, unbudgeted_id = lapsed.id, unbudgeted.id

    summary = await roll_payout_budgets(session_factory=session_factory)
    assert summary == {"merchants_reset": 1}

    again = await roll_payout_budgets(session_factory=session_factory)
    assert again == {"merchants_reset": 0}

    async with session_factory() as session:
        rows = {
            merchant.id: merchant
            for merchant in (
                await session.execute(
                    select(Merchant).where(Merchant.id.in_([lapsed_id, unbudgeted_id]))
                )
            ).scalars()
        }
    assert Decimal(str(rows[lapsed_id].current_month_payouts)) == Decimal("0")
    assert rows[lapsed_id].last_budget_reset_at is not None
    assert Decimal(str(rows[unbudgeted_id].current_month_payouts)) == Decimal("12")
