"""Reset merchant payout budgets when their monthly window rolls over."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.services.payouts import PayoutCoordinator, UnconfiguredTransferClient

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def roll_payout_budgets(*, session_factory: SessionFactory) -> Dict[str, Any]:
    maybe_session = session_factory()
    session = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session

    async with session as managed_session:
        coordinator = PayoutCoordinator(managed_session, transfer_client=UnconfiguredTransferClient())
        rolled = await coordinator.roll_all_budget_windows()
        await managed_session.commit()

    summary = {"merchants_reset": rolled}
    logger.bind(summary=summary).info("Payout budget rollover completed")
    return summary


__all__ = ["roll_payout_budgets"]
