"""HTTP rendering of rewards operation failures."""

from __future__ import annotations

from fastapi import status
from fastapi.responses import JSONResponse

from gob_api.services.loyalty.errors import OperationResult, RewardsError

# Starlette renamed the 422 constant; keep the literal.
UNPROCESSABLE = 422

ERROR_STATUS_CODES: dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "wrong_merchant": status.HTTP_403_FORBIDDEN,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "invalid_state": status.HTTP_409_CONFLICT,
    "already_confirmed": status.HTTP_409_CONFLICT,
    "already_declined": status.HTTP_409_CONFLICT,
    "already_cancelled": status.HTTP_409_CONFLICT,
    "expired": status.HTTP_410_GONE,
    "insufficient_points": UNPROCESSABLE,
    "insufficient_balance": UNPROCESSABLE,
    "plan_restricted": UNPROCESSABLE,
    "reward_unavailable": UNPROCESSABLE,
    "payout_failed": UNPROCESSABLE,
}


def error_response(error: RewardsError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS_CODES.get(error.code, status.HTTP_400_BAD_REQUEST),
        content={"success": False, "error": error.code, "message": error.message},
    )


def failure_response(result: OperationResult) -> JSONResponse:
    if result.error is not None:
        return error_response(result.error)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": result.error_code, "message": result.message},
    )


__all__ = ["ERROR_STATUS_CODES", "error_response", "failure_response"]
