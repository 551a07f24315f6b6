"""Typed failures raised inside the rewards services.

State-machine operations catch these at their boundary and hand back an
``OperationResult`` so callers never see validation errors as exceptions.
Storage errors are not wrapped and propagate as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar


class RewardsError(Exception):
    """Base class for domain failures with a stable machine-readable code."""

    code = "rewards_error"
    default_message = "Rewards operation failed"

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


class NotFound(RewardsError):
    code = "not_found"
    default_message = "Record not found"


class WrongMerchant(RewardsError):
    code = "wrong_merchant"
    default_message = "This redemption belongs to a different merchant"


class Forbidden(RewardsError):
    code = "forbidden"
    default_message = "Not allowed to act on this redemption"


class InvalidState(RewardsError):
    code = "invalid_state"
    default_message = "Redemption is no longer pending"


class AlreadyConfirmed(InvalidState):
    code = "already_confirmed"
    default_message = "This reward has already been redeemed"


class AlreadyDeclined(InvalidState):
    code = "already_declined"
    default_message = "This redemption was declined"


class AlreadyCancelled(InvalidState):
    code = "already_cancelled"
    default_message = "This redemption was cancelled by the member"


class Expired(InvalidState):
    code = "expired"
    default_message = "This QR code has expired. Ask the member to generate a new one."


class InsufficientPoints(RewardsError):
    code = "insufficient_points"
    default_message = "Member does not have enough points for this reward"


class InsufficientBalance(RewardsError):
    code = "insufficient_balance"
    default_message = "Ledger balance is too low for this debit"


class PlanRestricted(RewardsError):
    code = "plan_restricted"
    default_message = "This reward is not available on the merchant's current plan"


class RewardUnavailable(RewardsError):
    code = "reward_unavailable"
    default_message = "This reward is not currently available"


class PayoutFailed(RewardsError):
    code = "payout_failed"
    default_message = "Payout could not be completed"


T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of a state-machine operation."""

    ok: bool
    value: T | None = None
    error_code: str | None = None
    message: str | None = None
    error: RewardsError | None = None

    @classmethod
    def success(cls, value: T) -> "OperationResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: RewardsError) -> "OperationResult[T]":
        return cls(ok=False, error_code=error.code, message=error.message, error=error)


__all__ = [
    "AlreadyCancelled",
    "AlreadyConfirmed",
    "AlreadyDeclined",
    "Expired",
    "Forbidden",
    "InsufficientBalance",
    "InsufficientPoints",
    "InvalidState",
    "NotFound",
    "OperationResult",
    "PayoutFailed",
    "PlanRestricted",
    "RewardUnavailable",
    "RewardsError",
    "WrongMerchant",
]
