"""Payout settlement entrypoints shared by Celery and the operator CLI."""

from __future__ import annotations

import argparse
import asyncio
from typing import Any
from uuid import UUID

from loguru import logger

from gob_api.db.session import async_session
from gob_api.services.payouts import PayoutCoordinator, PayoutTransferClient


async def settle_payout(transaction_id: str, *, transfer_client: PayoutTransferClient | None = None) -> dict[str, Any]:
    async with async_session() as session:
        coordinator = PayoutCoordinator(session, transfer_client=transfer_client)
        outcome = await coordinator.settle(UUID(transaction_id))
    result = outcome.as_dict()
    logger.info("Payout settlement processed", **result)
    return result


def settle_payout_sync(transaction_id: str) -> dict[str, Any]:
    return asyncio.run(settle_payout(transaction_id))


def cli() -> None:
    parser = argparse.ArgumentParser(description="Settle a PENDING payout transaction.")
    parser.add_argument("transaction_id", help="RewardTransaction id of the PENDING payout")
    args = parser.parse_args()
    settle_payout_sync(args.transaction_id)


if __name__ == "__main__":  # pragma: no cover
    cli()


__all__ = ["settle_payout", "settle_payout_sync"]
