"""Relay callbacks for USDC payout settlement."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.api.dependencies.security import require_operator_api_key
from gob_api.api.errors import error_response
from gob_api.db.session import get_session
from gob_api.services.loyalty.errors import RewardsError
from gob_api.services.payouts import PayoutCoordinator


router = APIRouter(prefix="/payouts", tags=["payouts"], dependencies=[Depends(require_operator_api_key)])


class SettlementCallback(BaseModel):
    success: bool
    txHash: Optional[str] = Field(None, max_length=128)
    errorMessage: Optional[str] = Field(None, max_length=1000)

    @model_validator(mode="after")
    def _require_hash_on_success(self) -> "SettlementCallback":
        if self.success and not self.txHash:
            raise ValueError("txHash is required for successful settlements")
        return self


@router.post("/{transaction_id}/settlement")
async def record_settlement(
    transaction_id: UUID,
    payload: SettlementCallback,
    db: AsyncSession = Depends(get_session),
):
    """Apply the relay's final verdict. Repeated callbacks return the stored outcome."""

    try:
        outcome = await PayoutCoordinator(db).resolve_settlement_callback(
            transaction_id,
            success=payload.success,
            tx_hash=payload.txHash,
            error_message=payload.errorMessage,
        )
    except RewardsError as exc:
        return error_response(exc)
    return {"success": True, "payout": outcome.as_dict()}


__all__ = ["router"]
