"""Recurring job entrypoints for rewards maintenance."""

from .payouts import roll_payout_budgets  # noqa: F401
from .redemptions import expire_stale_redemptions  # noqa: F401

__all__ = ["expire_stale_redemptions", "roll_payout_budgets"]
