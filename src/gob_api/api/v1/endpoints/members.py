"""Member-facing rewards endpoints: balance, catalog, and redemption requests."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.api.dependencies.session import require_member_id
from gob_api.api.errors import error_response, failure_response
from gob_api.core.settings import settings
from gob_api.db.session import get_session
from gob_api.models.loyalty import RedemptionRequest
from gob_api.services.loyalty import LedgerBalance, PointsLedger, RewardCatalogGate
from gob_api.services.loyalty.errors import RewardsError
from gob_api.services.loyalty.redemptions import RedemptionService
from gob_api.services.payouts import PayoutCoordinator


router = APIRouter(prefix="/rewards", tags=["rewards"])


class RedemptionCreateRequest(BaseModel):
    merchantId: UUID
    rewardId: UUID
    businessId: Optional[UUID] = Field(None, description="Location where the member will redeem")


class RedemptionTicketResponse(BaseModel):
    success: bool = True
    redemptionId: UUID
    qrCodeData: str
    qrCodeHash: str
    expiresAt: datetime
    expiresInMinutes: int
    reused: bool


class RedemptionRewardSummary(BaseModel):
    id: UUID
    name: str
    pointsCost: int
    rewardType: str


class RedemptionResponse(BaseModel):
    id: UUID
    status: str
    pointsCost: int
    usdcCost: Optional[str]
    createdAt: datetime
    expiresAt: datetime
    confirmedAt: Optional[datetime]
    declinedAt: Optional[datetime]
    declineReason: Optional[str]
    cancelledAt: Optional[datetime]
    reward: Optional[RedemptionRewardSummary] = None


class RedemptionStatusResponse(BaseModel):
    success: bool = True
    redemption: RedemptionResponse


class BalanceResponse(BaseModel):
    merchantId: UUID
    points: int
    tier: str
    nextTier: Optional[str]
    pointsToNextTier: int
    memberNote: Optional[str]


class CatalogRewardResponse(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    pointsCost: int
    rewardType: str
    usdcAmount: Optional[str]
    isGreyed: bool


class MemberNoteRequest(BaseModel):
    merchantId: UUID
    note: Optional[str] = Field(None, max_length=500)


class MerchantScopedRequest(BaseModel):
    merchantId: UUID


class MilestoneEligibilityResponse(BaseModel):
    eligible: bool
    currentPoints: int
    milestonePoints: int
    pointsNeeded: int
    payoutAmountUsd: str
    hasWallet: bool
    payoutEnabled: bool


class MilestoneClaimResponse(BaseModel):
    success: bool = True
    pointsDeducted: int
    newBalance: int
    refunded: bool
    payout: dict


def _serialize_redemption(redemption: RedemptionRequest, *, include_reward: bool = False) -> RedemptionResponse:
    reward = None
    if include_reward and redemption.reward is not None:
        reward = RedemptionRewardSummary(
            id=redemption.reward.id,
            name=redemption.reward.name,
            pointsCost=redemption.reward.points_cost,
            rewardType=redemption.reward.reward_type.value,
        )
    return RedemptionResponse(
        id=redemption.id,
        status=redemption.status.value,
        pointsCost=redemption.points_cost,
        usdcCost=str(redemption.usdc_cost) if redemption.usdc_cost is not None else None,
        createdAt=redemption.created_at,
        expiresAt=redemption.expires_at,
        confirmedAt=redemption.confirmed_at,
        declinedAt=redemption.declined_at,
        declineReason=redemption.decline_reason,
        cancelledAt=redemption.cancelled_at,
        reward=reward,
    )


def _serialize_balance(balance: LedgerBalance) -> BalanceResponse:
    return BalanceResponse(
        merchantId=balance.merchant_id,
        points=balance.points,
        tier=balance.tier.value,
        nextTier=balance.next_tier.value if balance.next_tier else None,
        pointsToNextTier=balance.points_to_next_tier,
        memberNote=balance.member_note,
    )


@router.post(
    "/redemptions",
    response_model=RedemptionTicketResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_redemption(
    payload: RedemptionCreateRequest,
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    """Generate (or reuse) a QR code for redeeming one reward."""

    result = await RedemptionService(db).create_redemption_request(
        member_id,
        payload.merchantId,
        payload.rewardId,
        business_id=payload.businessId,
    )
    if not result.ok:
        return failure_response(result)
    ticket = result.value
    return RedemptionTicketResponse(
        redemptionId=ticket.redemption.id,
        qrCodeData=ticket.qr_code_data,
        qrCodeHash=ticket.redemption.qr_code_hash,
        expiresAt=ticket.redemption.expires_at,
        expiresInMinutes=settings.redemption_ttl_minutes,
        reused=ticket.reused,
    )


@router.get("/redemptions/pending", response_model=List[RedemptionResponse])
async def list_pending_redemptions(
    merchant_id: UUID = Query(..., alias="merchantId"),
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    redemptions = await RedemptionService(db).list_pending_redemptions(member_id, merchant_id)
    return [_serialize_redemption(item, include_reward=True) for item in redemptions]


@router.get("/redemptions/history", response_model=List[RedemptionResponse])
async def list_redemption_history(
    merchant_id: UUID = Query(..., alias="merchantId"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
) -> List[RedemptionResponse]:
    redemptions = await RedemptionService(db).list_redemption_history(member_id, merchant_id, limit=limit)
    return [_serialize_redemption(item, include_reward=True) for item in redemptions]


@router.get("/redemptions/{redemption_id}/status", response_model=RedemptionStatusResponse)
async def get_redemption_status(
    redemption_id: UUID,
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    result = await RedemptionService(db).get_redemption_status(redemption_id, member_id=member_id)
    if not result.ok:
        return failure_response(result)
    return RedemptionStatusResponse(redemption=_serialize_redemption(result.value))


@router.post("/redemptions/{redemption_id}/cancel", response_model=RedemptionStatusResponse)
async def cancel_redemption(
    redemption_id: UUID,
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    result = await RedemptionService(db).cancel_redemption(redemption_id, member_id)
    if not result.ok:
        return failure_response(result)
    return RedemptionStatusResponse(redemption=_serialize_redemption(result.value))


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    merchant_id: UUID = Query(..., alias="merchantId"),
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    try:
        balance = await PointsLedger(db).get_balance(merchant_id, member_id)
    except RewardsError as exc:
        return error_response(exc)
    await db.commit()
    return _serialize_balance(balance)


@router.get("/catalog", response_model=List[CatalogRewardResponse])
async def get_catalog(
    merchant_id: UUID = Query(..., alias="merchantId"),
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    try:
        entries = await RewardCatalogGate(db).list_catalog(merchant_id)
    except RewardsError as exc:
        return error_response(exc)
    return [
        CatalogRewardResponse(
            id=entry.reward.id,
            name=entry.reward.name,
            description=entry.reward.description,
            pointsCost=entry.reward.points_cost,
            rewardType=entry.reward.reward_type.value,
            usdcAmount=str(entry.reward.usdc_amount) if entry.reward.usdc_amount is not None else None,
            isGreyed=entry.is_greyed,
        )
        for entry in entries
    ]


@router.put("/note", response_model=BalanceResponse)
async def update_member_note(
    payload: MemberNoteRequest,
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    """Store the note staff see when this member redeems."""

    try:
        balance = await PointsLedger(db).set_member_note(payload.merchantId, member_id, payload.note)
    except RewardsError as exc:
        return error_response(exc)
    await db.commit()
    return _serialize_balance(balance)


@router.get("/payouts/eligibility", response_model=MilestoneEligibilityResponse)
async def get_payout_eligibility(
    merchant_id: UUID = Query(..., alias="merchantId"),
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    try:
        eligibility = await PayoutCoordinator(db).get_milestone_eligibility(merchant_id, member_id)
    except RewardsError as exc:
        return error_response(exc)
    await db.commit()
    return MilestoneEligibilityResponse(
        eligible=eligibility.eligible,
        currentPoints=eligibility.current_points,
        milestonePoints=eligibility.milestone_points,
        pointsNeeded=eligibility.points_needed,
        payoutAmountUsd=str(eligibility.payout_amount_usd),
        hasWallet=eligibility.has_wallet,
        payoutEnabled=eligibility.payout_enabled,
    )


@router.post("/payouts/claim", response_model=MilestoneClaimResponse)
async def claim_milestone_payout(
    payload: MerchantScopedRequest,
    member_id: UUID = Depends(require_member_id),
    db: AsyncSession = Depends(get_session),
):
    result = await PayoutCoordinator(db).claim_milestone_payout(payload.merchantId, member_id)
    if not result.ok:
        return failure_response(result)
    claim = result.value
    return MilestoneClaimResponse(
        pointsDeducted=claim.points_deducted,
        newBalance=claim.new_balance,
        refunded=claim.refunded,
        payout=claim.payout.as_dict(),
    )


__all__ = ["router"]
