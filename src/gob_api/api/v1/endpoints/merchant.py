"""Staff-facing endpoints: QR verification, redemption decisions, ledger tools, payouts."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.api.dependencies.session import MerchantContext, require_merchant_context
from gob_api.api.errors import error_response, failure_response
from gob_api.db.session import get_session
from gob_api.models.loyalty import RewardTransaction, TransactionType
from gob_api.services.loyalty import PointsLedger, RewardCatalogGate
from gob_api.services.loyalty.errors import NotFound, RewardsError
from gob_api.services.loyalty.ledger import LedgerEntry
from gob_api.services.loyalty.redemptions import RedemptionService
from gob_api.services.payouts import BudgetSettings, PayoutCoordinator


router = APIRouter(prefix="/merchant", tags=["merchant"])


class VerifyRequest(BaseModel):
    qrCode: str = Field(..., min_length=1, description="Scanned QR payload or bare token")


class VerifiedMember(BaseModel):
    id: UUID
    firstName: Optional[str]
    lastName: Optional[str]
    email: Optional[str]


class VerifiedReward(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    pointsCost: int
    rewardType: str
    usdcAmount: Optional[str]


class VerifyResponse(BaseModel):
    success: bool = True
    redemptionId: UUID
    status: str
    member: VerifiedMember
    reward: VerifiedReward
    memberBalance: int
    memberTier: str
    memberNote: Optional[str]
    hasSufficientPoints: bool
    expiresAt: datetime
    secondsRemaining: int


class ConfirmRequest(BaseModel):
    businessId: Optional[UUID] = Field(None, description="Location override for the redemption")


class ConfirmResponse(BaseModel):
    success: bool = True
    transaction: dict


class DeclineRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PendingRedemptionResponse(BaseModel):
    id: UUID
    memberId: UUID
    memberName: Optional[str]
    rewardId: UUID
    rewardName: Optional[str]
    pointsCost: int
    memberNote: Optional[str]
    createdAt: datetime
    expiresAt: datetime


class AdjustPointsRequest(BaseModel):
    delta: int = Field(..., description="Signed point change; negative deltas clamp at zero")
    reason: str = Field(..., min_length=1, max_length=500)


class EarnPointsRequest(BaseModel):
    points: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    businessId: Optional[UUID] = None


class LedgerChangeResponse(BaseModel):
    success: bool = True
    transactionId: UUID
    requestedDelta: int
    appliedDelta: int
    points: int
    tier: str
    previousTier: str


class TransactionResponse(BaseModel):
    id: UUID
    type: str
    amount: int
    pointsDeducted: Optional[int]
    usdcAmount: Optional[str]
    reason: Optional[str]
    status: str
    txHash: Optional[str]
    walletAddress: Optional[str]
    errorMessage: Optional[str]
    redemptionId: Optional[UUID]
    createdAt: datetime
    settledAt: Optional[datetime]


class ReconciliationResponse(BaseModel):
    storedPoints: int
    ledgerPoints: int
    drift: int
    transactionCount: int
    isConsistent: bool


class BudgetResponse(BaseModel):
    monthlyPayoutBudget: Optional[str]
    payoutBudgetResetDay: Optional[int]
    currentMonthPayouts: str
    remaining: Optional[str]


class BudgetUpdateRequest(BaseModel):
    enabled: bool
    monthlyBudget: Optional[Decimal] = None
    resetDay: Optional[int] = None


class PayoutStatsResponse(BaseModel):
    payoutEnabled: bool
    walletAddress: Optional[str]
    milestonePoints: int
    payoutAmountUsd: str
    totalPaidOut: str
    totalPayouts: int
    failedPayouts: int
    pendingPayouts: int
    budget: BudgetResponse
    recentPayouts: List[TransactionResponse]


class RetryResponse(BaseModel):
    success: bool = True
    payout: dict


def _serialize_transaction(transaction: RewardTransaction) -> TransactionResponse:
    return TransactionResponse(
        id=transaction.id,
        type=transaction.type.value,
        amount=transaction.amount,
        pointsDeducted=transaction.points_deducted,
        usdcAmount=str(transaction.usdc_amount) if transaction.usdc_amount is not None else None,
        reason=transaction.reason,
        status=transaction.status.value,
        txHash=transaction.tx_hash,
        walletAddress=transaction.wallet_address,
        errorMessage=transaction.error_message,
        redemptionId=transaction.redemption_id,
        createdAt=transaction.created_at,
        settledAt=transaction.settled_at,
    )


def _serialize_budget(budget: BudgetSettings) -> BudgetResponse:
    return BudgetResponse(
        monthlyPayoutBudget=str(budget.monthly_budget) if budget.monthly_budget is not None else None,
        payoutBudgetResetDay=budget.reset_day,
        currentMonthPayouts=str(budget.current_month_payouts),
        remaining=str(budget.remaining) if budget.remaining is not None else None,
    )


def _serialize_ledger_change(entry: LedgerEntry) -> LedgerChangeResponse:
    return LedgerChangeResponse(
        transactionId=entry.transaction.id,
        requestedDelta=entry.requested_delta,
        appliedDelta=entry.applied_delta,
        points=entry.balance.points,
        tier=entry.balance.tier.value,
        previousTier=entry.previous_tier.value,
    )


@router.post("/redemptions/verify", response_model=VerifyResponse)
async def verify_redemption(
    payload: VerifyRequest,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    """Preview a scanned QR code before confirming it."""

    result = await RedemptionService(db).verify_redemption_qr(payload.qrCode, context.merchant_id)
    if not result.ok:
        return failure_response(result)
    preview = result.value
    return VerifyResponse(
        redemptionId=preview.redemption.id,
        status=preview.redemption.status.value,
        member=VerifiedMember(
            id=preview.member.id,
            firstName=preview.member.first_name,
            lastName=preview.member.last_name,
            email=preview.member.email,
        ),
        reward=VerifiedReward(
            id=preview.reward.id,
            name=preview.reward.name,
            description=preview.reward.description,
            pointsCost=preview.redemption.points_cost,
            rewardType=preview.reward.reward_type.value,
            usdcAmount=str(preview.redemption.usdc_cost) if preview.redemption.usdc_cost is not None else None,
        ),
        memberBalance=preview.member_balance,
        memberTier=preview.member_tier.value,
        memberNote=preview.member_note,
        hasSufficientPoints=preview.has_sufficient_points,
        expiresAt=preview.redemption.expires_at,
        secondsRemaining=preview.seconds_remaining,
    )


@router.post("/redemptions/{redemption_id}/confirm", response_model=ConfirmResponse)
async def confirm_redemption(
    redemption_id: UUID,
    payload: ConfirmRequest | None = None,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    result = await RedemptionService(db).confirm_redemption(
        redemption_id,
        context.merchant_id,
        staff_id=context.staff_id,
        business_id=payload.businessId if payload else None,
    )
    if not result.ok:
        return failure_response(result)
    return ConfirmResponse(transaction=result.value.as_dict())


@router.post("/redemptions/{redemption_id}/decline")
async def decline_redemption(
    redemption_id: UUID,
    payload: DeclineRequest | None = None,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    result = await RedemptionService(db).decline_redemption(
        redemption_id,
        context.merchant_id,
        reason=payload.reason if payload else None,
    )
    if not result.ok:
        return failure_response(result)
    return {"success": True, "status": result.value.status.value, "declineReason": result.value.decline_reason}


@router.get("/redemptions/pending", response_model=List[PendingRedemptionResponse])
async def list_pending_redemptions(
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
) -> List[PendingRedemptionResponse]:
    redemptions = await RedemptionService(db).list_merchant_pending(context.merchant_id)
    return [
        PendingRedemptionResponse(
            id=item.id,
            memberId=item.member_id,
            memberName=item.member.display_name if item.member else None,
            rewardId=item.reward_id,
            rewardName=item.reward.name if item.reward else None,
            pointsCost=item.points_cost,
            memberNote=item.member_note,
            createdAt=item.created_at,
            expiresAt=item.expires_at,
        )
        for item in redemptions
    ]


@router.post("/members/{member_id}/adjust-points", response_model=LedgerChangeResponse)
async def adjust_member_points(
    member_id: UUID,
    payload: AdjustPointsRequest,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    try:
        entry = await PointsLedger(db).adjust(context.merchant_id, member_id, payload.delta, payload.reason)
    except RewardsError as exc:
        return error_response(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    await db.commit()
    return _serialize_ledger_change(entry)


@router.post("/members/{member_id}/earn-points", response_model=LedgerChangeResponse)
async def award_member_points(
    member_id: UUID,
    payload: EarnPointsRequest,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    try:
        entry = await PointsLedger(db).credit(
            context.merchant_id,
            member_id,
            payload.points,
            payload.reason,
            business_id=payload.businessId,
        )
    except RewardsError as exc:
        return error_response(exc)
    await db.commit()
    return _serialize_ledger_change(entry)


@router.get("/members/{member_id}/transactions", response_model=List[TransactionResponse])
async def list_member_transactions(
    member_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    transaction_type: Optional[TransactionType] = Query(None, alias="type"),
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    ledger = PointsLedger(db)
    membership = await ledger.get_membership(context.merchant_id, member_id)
    if membership is None:
        return error_response(NotFound("Member not found in merchant records"))
    transactions = await ledger.recorder.list_member_transactions(
        membership.id,
        limit=limit,
        types=[transaction_type] if transaction_type else None,
    )
    return [_serialize_transaction(item) for item in transactions]


@router.get("/members/{member_id}/reconcile", response_model=ReconciliationResponse)
async def reconcile_member_ledger(
    member_id: UUID,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    """Compare the stored balance with the transaction log. Read-only."""

    ledger = PointsLedger(db)
    membership = await ledger.get_membership(context.merchant_id, member_id)
    if membership is None:
        return error_response(NotFound("Member not found in merchant records"))
    report = await ledger.recorder.reconcile(membership)
    return ReconciliationResponse(
        storedPoints=report.stored_points,
        ledgerPoints=report.ledger_points,
        drift=report.drift,
        transactionCount=report.transaction_count,
        isConsistent=report.is_consistent,
    )


@router.get("/rewards/visibility")
async def get_reward_visibility(
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    try:
        visibility = await RewardCatalogGate(db).get_reward_visibility(context.merchant_id)
    except RewardsError as exc:
        return error_response(exc)
    return visibility.as_dict()


@router.get("/payouts", response_model=PayoutStatsResponse)
async def get_payout_stats(
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    try:
        stats = await PayoutCoordinator(db).get_payout_stats(context.merchant_id)
    except RewardsError as exc:
        return error_response(exc)
    return PayoutStatsResponse(
        payoutEnabled=stats.payout_enabled,
        walletAddress=stats.wallet_address,
        milestonePoints=stats.milestone_points,
        payoutAmountUsd=str(stats.payout_amount_usd),
        totalPaidOut=str(stats.totals.total_paid_out),
        totalPayouts=stats.totals.total_payouts,
        failedPayouts=stats.totals.failed_payouts,
        pendingPayouts=stats.totals.pending_payouts,
        budget=_serialize_budget(stats.budget),
        recentPayouts=[_serialize_transaction(item) for item in stats.recent_payouts],
    )


@router.post("/payouts/{transaction_id}/retry", response_model=RetryResponse)
async def retry_payout(
    transaction_id: UUID,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    result = await PayoutCoordinator(db).retry_payout(transaction_id, context.merchant_id)
    if not result.ok:
        return failure_response(result)
    return RetryResponse(payout=result.value.as_dict())


@router.put("/payouts/budget", response_model=BudgetResponse)
async def update_payout_budget(
    payload: BudgetUpdateRequest,
    context: MerchantContext = Depends(require_merchant_context),
    db: AsyncSession = Depends(get_session),
):
    try:
        budget = await PayoutCoordinator(db).update_budget(
            context.merchant_id,
            enabled=payload.enabled,
            monthly_budget=payload.monthlyBudget,
            reset_day=payload.resetDay,
        )
    except RewardsError as exc:
        return error_response(exc)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    await db.commit()
    return _serialize_budget(budget)


__all__ = ["router"]
