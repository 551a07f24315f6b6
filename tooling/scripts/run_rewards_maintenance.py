#!/usr/bin/env python3
"""Expire lapsed redemption QR codes and roll payout budget windows once.

Intended for environments that run maintenance from cron instead of the
in-process scheduler.

Example:
    python tooling/scripts/run_rewards_maintenance.py --batch-size 200
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run rewards maintenance jobs once")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Maximum redemption requests to expire in this run.",
    )
    parser.add_argument(
        "--skip-budgets",
        action="store_true",
        help="Only sweep redemptions; leave payout budget windows untouched.",
    )
    return parser.parse_args()


async def _run(batch_size: int | None, skip_budgets: bool) -> dict[str, object]:
    from gob_api.db.session import async_session
    from gob_api.jobs import expire_stale_redemptions, roll_payout_budgets

    summary: dict[str, object] = {}
    summary["redemptions"] = await expire_stale_redemptions(session_factory=async_session, batch_size=batch_size)
    if not skip_budgets:
        summary["budgets"] = await roll_payout_budgets(session_factory=async_session)
    return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.batch_size, args.skip_budgets))
    logger.success("Rewards maintenance run completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
