"""Sweep PENDING redemption requests whose QR code has lapsed."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.core.settings import settings
from gob_api.services.loyalty.redemptions import RedemptionService

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def expire_stale_redemptions(*, session_factory: SessionFactory, batch_size: int | None = None) -> Dict[str, Any]:
    """Mark overdue requests EXPIRED so staff pending lists stay accurate.

    Verify and confirm already refuse expired codes on their own; this only
    keeps listings fresh.
    """

    if not settings.redemption_sweeper_enabled:
        logger.info("Redemption sweeper disabled; skipping run")
        return {"expired": 0, "skipped": True}

    maybe_session = session_factory()
    session = maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session

    async with session as managed_session:
        service = RedemptionService(managed_session)
        expired = await service.expire_stale_redemptions(limit=batch_size or settings.redemption_sweeper_batch_size)
        await managed_session.commit()

    summary = {"expired": expired, "skipped": False}
    logger.bind(summary=summary).info("Redemption sweep completed")
    return summary


__all__ = ["expire_stale_redemptions"]
