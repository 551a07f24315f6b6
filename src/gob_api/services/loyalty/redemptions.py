"""Redemption request lifecycle: create, verify, confirm, decline, cancel, expire.

Every status change is a compare-and-swap on ``status = 'PENDING'`` so two
staff members scanning the same QR code cannot both confirm it. Confirm
debits the ledger in the same database transaction as the status flip.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from gob_api.core.settings import settings
from gob_api.db.base import ensure_aware, utcnow
from gob_api.models.loyalty import (
    TERMINAL_REDEMPTION_STATUSES,
    RedemptionRequest,
    RedemptionStatus,
    Reward,
    RewardKind,
    TransactionStatus,
    TransactionType,
)
from gob_api.models.member import Member, MemberTier
from gob_api.models.merchant import Business
from gob_api.observability.redemptions import get_redemption_store
from gob_api.services.payouts.coordinator import PayoutCoordinator, PayoutOutcome

from .catalog import RewardCatalogGate
from .errors import (
    AlreadyCancelled,
    AlreadyConfirmed,
    AlreadyDeclined,
    Expired,
    Forbidden,
    InsufficientBalance,
    InsufficientPoints,
    InvalidState,
    NotFound,
    OperationResult,
    RewardsError,
    WrongMerchant,
)
from .ledger import PointsLedger


DEFAULT_DECLINE_REASON = "Declined by staff"

_STATUS_ERRORS: dict[RedemptionStatus, type[InvalidState]] = {
    RedemptionStatus.CONFIRMED: AlreadyConfirmed,
    RedemptionStatus.DECLINED: AlreadyDeclined,
    RedemptionStatus.CANCELLED: AlreadyCancelled,
    RedemptionStatus.EXPIRED: Expired,
}


def status_error(status: RedemptionStatus) -> InvalidState:
    """Error describing why a request in ``status`` cannot move any further."""

    error_cls = _STATUS_ERRORS.get(status, InvalidState)
    return error_cls(status=status.value)


def qr_payload(qr_code_hash: str) -> str:
    return f"{settings.redemption_qr_prefix}{qr_code_hash}"


def strip_qr_prefix(scanned: str) -> str:
    value = (scanned or "").strip()
    if value.startswith(settings.redemption_qr_prefix):
        return value[len(settings.redemption_qr_prefix):]
    return value


def is_expired(redemption: RedemptionRequest, now: datetime | None = None) -> bool:
    return ensure_aware(redemption.expires_at) < (now or utcnow())


@dataclass
class RedemptionTicket:
    redemption: RedemptionRequest
    qr_code_data: str
    reused: bool


@dataclass
class RedemptionPreview:
    redemption: RedemptionRequest
    reward: Reward
    member: Member
    member_balance: int
    member_tier: MemberTier
    member_note: str | None
    seconds_remaining: int

    @property
    def has_sufficient_points(self) -> bool:
        return self.member_balance >= int(self.redemption.points_cost)


@dataclass
class ConfirmedRedemption:
    redemption_id: UUID
    transaction_id: UUID
    points_deducted: int
    new_balance: int
    new_tier: MemberTier
    reward_name: str
    payout: PayoutOutcome | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "redemptionId": str(self.redemption_id),
            "transactionId": str(self.transaction_id),
            "pointsDeducted": self.points_deducted,
            "newBalance": self.new_balance,
            "newTier": self.new_tier.value,
            "rewardName": self.reward_name,
            "payout": self.payout.as_dict() if self.payout else None,
        }


class RedemptionService:
    """Drives RedemptionRequest through PENDING to one terminal status.

    Public operations return ``OperationResult``; domain failures are logged,
    counted and handed back, storage errors propagate.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        ledger: PointsLedger | None = None,
        catalog: RewardCatalogGate | None = None,
        payout_coordinator: PayoutCoordinator | None = None,
    ) -> None:
        self._db = db_session
        self._ledger = ledger or PointsLedger(db_session)
        self._catalog = catalog or RewardCatalogGate(db_session)
        self._payouts = payout_coordinator
        self._store = get_redemption_store()

    @property
    def payouts(self) -> PayoutCoordinator:
        if self._payouts is None:
            self._payouts = PayoutCoordinator(db_session=self._db, recorder=self._ledger.recorder)
        return self._payouts

    async def create_redemption_request(
        self,
        member_id: UUID,
        merchant_id: UUID,
        reward_id: UUID,
        *,
        business_id: UUID | None = None,
    ) -> OperationResult[RedemptionTicket]:
        try:
            membership = await self._ledger.get_membership(merchant_id, member_id)
            if membership is None:
                raise NotFound("You are not a member of this merchant", merchant_id=str(merchant_id))

            reward = await self._catalog.require_redeemable(merchant_id, reward_id)
            if int(membership.points or 0) < int(reward.points_cost):
                raise InsufficientPoints(
                    f"Not enough points. You have {membership.points} points but need {reward.points_cost}",
                    available=int(membership.points or 0),
                    required=int(reward.points_cost),
                )
            if business_id is not None:
                await self._require_business(merchant_id, business_id)

            existing = await self._find_pending(member_id, merchant_id, reward_id)
            if existing is not None:
                if not is_expired(existing):
                    logger.info(
                        "Reusing pending redemption request",
                        redemption_id=str(existing.id),
                        member_id=str(member_id),
                        reward_id=str(reward_id),
                    )
                    return OperationResult.success(
                        RedemptionTicket(existing, qr_payload(existing.qr_code_hash), reused=True)
                    )
                await self._transition(existing.id, RedemptionStatus.EXPIRED)

            now = utcnow()
            redemption = RedemptionRequest(
                member_id=member_id,
                merchant_id=merchant_id,
                reward_id=reward.id,
                business_id=business_id,
                qr_code_hash=secrets.token_hex(16),
                status=RedemptionStatus.PENDING,
                points_cost=int(reward.points_cost),
                usdc_cost=reward.usdc_amount if reward.reward_type == RewardKind.USDC_PAYOUT else None,
                member_note=membership.member_note,
                created_at=now,
                expires_at=now + timedelta(minutes=settings.redemption_ttl_minutes),
            )
            self._db.add(redemption)
            try:
                await self._db.flush()
            except IntegrityError:
                await self._db.rollback()
                winner = await self._find_pending(member_id, merchant_id, reward_id)
                if winner is None:
                    raise
                logger.warning(
                    "Detected race when creating redemption request",
                    redemption_id=str(winner.id),
                    member_id=str(member_id),
                )
                return OperationResult.success(RedemptionTicket(winner, qr_payload(winner.qr_code_hash), reused=True))
        except RewardsError as exc:
            await self._db.rollback()
            return self._failed("create", exc)

        await self._db.commit()
        self._store.record_transition(RedemptionStatus.PENDING.value)
        logger.info(
            "Created redemption request",
            redemption_id=str(redemption.id),
            member_id=str(member_id),
            merchant_id=str(merchant_id),
            reward_id=str(reward_id),
            points_cost=redemption.points_cost,
        )
        return OperationResult.success(RedemptionTicket(redemption, qr_payload(redemption.qr_code_hash), reused=False))

    async def verify_redemption_qr(self, qr_code: str, merchant_id: UUID) -> OperationResult[RedemptionPreview]:
        """Staff-side preview of a scanned code. Mutates only to expire it."""

        qr_code_hash = strip_qr_prefix(qr_code)
        try:
            result = await self._db.execute(
                select(RedemptionRequest)
                .where(RedemptionRequest.qr_code_hash == qr_code_hash)
                .execution_options(populate_existing=True)
            )
            redemption = result.scalar_one_or_none()
            if redemption is None:
                raise NotFound("Invalid QR code")
            await self._require_actionable(redemption, merchant_id)

            reward = await self._db.get(Reward, redemption.reward_id)
            member = await self._db.get(Member, redemption.member_id)
            membership = await self._ledger.get_membership(merchant_id, redemption.member_id)
            if reward is None or member is None or membership is None:
                raise NotFound("Member not found in merchant records")
        except RewardsError as exc:
            return self._failed("verify", exc)

        remaining = ensure_aware(redemption.expires_at) - utcnow()
        return OperationResult.success(
            RedemptionPreview(
                redemption=redemption,
                reward=reward,
                member=member,
                member_balance=int(membership.points or 0),
                member_tier=membership.tier,
                member_note=redemption.member_note or membership.member_note,
                seconds_remaining=max(0, int(remaining.total_seconds())),
            )
        )

    async def confirm_redemption(
        self,
        redemption_id: UUID,
        merchant_id: UUID,
        *,
        staff_id: str | None = None,
        business_id: UUID | None = None,
    ) -> OperationResult[ConfirmedRedemption]:
        try:
            redemption = await self._get_redemption(redemption_id, lock=True)
            await self._require_actionable(redemption, merchant_id)

            reward = await self._db.get(Reward, redemption.reward_id)
            if reward is None:
                raise NotFound("Reward not found", reward_id=str(redemption.reward_id))
            target_business_id = await self._resolve_business(merchant_id, business_id or redemption.business_id)

            membership = await self._ledger.get_membership(merchant_id, redemption.member_id, lock=True)
            points_cost = int(redemption.points_cost)
            if membership is None or int(membership.points or 0) < points_cost:
                balance = int(membership.points or 0) if membership else 0
                raise InsufficientPoints(
                    f"Insufficient points. Balance: {balance}, Required: {points_cost}",
                    available=balance,
                    required=points_cost,
                )

            now = utcnow()
            flipped = await self._transition(
                redemption.id,
                RedemptionStatus.CONFIRMED,
                confirmed_at=now,
                confirmed_by_staff_id=staff_id,
                business_id=target_business_id,
            )
            if not flipped:
                current = await self._get_redemption(redemption.id)
                if current.status == RedemptionStatus.PENDING:
                    # Lost to a confirm this session cannot see yet.
                    raise AlreadyConfirmed()
                raise status_error(current.status)

            try:
                entry = await self._ledger.debit(
                    merchant_id,
                    redemption.member_id,
                    points_cost,
                    f"Redeemed: {reward.name}",
                    transaction_type=TransactionType.REDEEM,
                    business_id=target_business_id,
                    redemption_id=redemption.id,
                    usdc_amount=redemption.usdc_cost,
                )
            except InsufficientBalance as exc:
                raise InsufficientPoints(**exc.context) from exc

            payout_transaction = None
            if reward.reward_type == RewardKind.USDC_PAYOUT:
                member = await self._db.get(Member, redemption.member_id)
                payout_transaction = await self._ledger.recorder.record(
                    membership,
                    transaction_type=TransactionType.PAYOUT,
                    amount=0,
                    reason=f"USDC payout: {reward.name}",
                    business_id=target_business_id,
                    redemption_id=redemption.id,
                    usdc_amount=redemption.usdc_cost,
                    status=TransactionStatus.PENDING,
                    wallet_address=member.wallet_address if member else None,
                )
        except RewardsError as exc:
            await self._db.rollback()
            return self._failed("confirm", exc)

        await self._db.commit()
        self._store.record_transition(RedemptionStatus.CONFIRMED.value)
        logger.info(
            "Confirmed redemption",
            redemption_id=str(redemption.id),
            member_id=str(redemption.member_id),
            reward=reward.name,
            points_deducted=points_cost,
            new_balance=entry.balance.points,
            staff_id=staff_id,
        )

        payout = None
        if payout_transaction is not None:
            payout = await self.payouts.dispatch(payout_transaction.id)

        return OperationResult.success(
            ConfirmedRedemption(
                redemption_id=redemption.id,
                transaction_id=entry.transaction.id,
                points_deducted=points_cost,
                new_balance=entry.balance.points,
                new_tier=entry.balance.tier,
                reward_name=reward.name,
                payout=payout,
            )
        )

    async def decline_redemption(
        self,
        redemption_id: UUID,
        merchant_id: UUID,
        *,
        reason: str | None = None,
    ) -> OperationResult[RedemptionRequest]:
        try:
            redemption = await self._get_redemption(redemption_id)
            if redemption.merchant_id != merchant_id:
                raise WrongMerchant()
            await self._finish_pending(
                redemption,
                RedemptionStatus.DECLINED,
                declined_at=utcnow(),
                decline_reason=(reason or "").strip() or DEFAULT_DECLINE_REASON,
            )
        except RewardsError as exc:
            await self._db.rollback()
            return self._failed("decline", exc)

        await self._db.commit()
        logger.info("Declined redemption", redemption_id=str(redemption_id), reason=redemption.decline_reason)
        return OperationResult.success(redemption)

    async def cancel_redemption(self, redemption_id: UUID, member_id: UUID) -> OperationResult[RedemptionRequest]:
        try:
            redemption = await self._get_redemption(redemption_id)
            if redemption.member_id != member_id:
                raise Forbidden("Only the member who created this redemption can cancel it")
            await self._finish_pending(redemption, RedemptionStatus.CANCELLED, cancelled_at=utcnow())
        except RewardsError as exc:
            await self._db.rollback()
            return self._failed("cancel", exc)

        await self._db.commit()
        logger.info("Cancelled redemption", redemption_id=str(redemption_id), member_id=str(member_id))
        return OperationResult.success(redemption)

    async def get_redemption_status(
        self,
        redemption_id: UUID,
        *,
        member_id: UUID | None = None,
    ) -> OperationResult[RedemptionRequest]:
        """Status poll used by the member's QR screen; flips stale requests to EXPIRED."""

        try:
            redemption = await self._get_redemption(redemption_id)
            if member_id is not None and redemption.member_id != member_id:
                raise Forbidden()
            if redemption.status == RedemptionStatus.PENDING and is_expired(redemption):
                if await self._transition(redemption.id, RedemptionStatus.EXPIRED):
                    await self._db.commit()
                    self._store.record_transition(RedemptionStatus.EXPIRED.value)
                redemption = await self._get_redemption(redemption.id)
        except RewardsError as exc:
            return self._failed("status", exc)
        return OperationResult.success(redemption)

    async def list_pending_redemptions(self, member_id: UUID, merchant_id: UUID) -> list[RedemptionRequest]:
        stmt = (
            select(RedemptionRequest)
            .options(selectinload(RedemptionRequest.reward))
            .where(
                RedemptionRequest.member_id == member_id,
                RedemptionRequest.merchant_id == merchant_id,
                RedemptionRequest.status == RedemptionStatus.PENDING,
                RedemptionRequest.expires_at > utcnow(),
            )
            .order_by(RedemptionRequest.created_at.desc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def list_redemption_history(
        self,
        member_id: UUID,
        merchant_id: UUID,
        *,
        limit: int | None = None,
    ) -> list[RedemptionRequest]:
        stmt = (
            select(RedemptionRequest)
            .options(selectinload(RedemptionRequest.reward))
            .where(
                RedemptionRequest.member_id == member_id,
                RedemptionRequest.merchant_id == merchant_id,
                RedemptionRequest.status.in_(TERMINAL_REDEMPTION_STATUSES),
            )
            .order_by(RedemptionRequest.created_at.desc())
            .limit(limit or settings.redemption_history_limit)
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def list_merchant_pending(self, merchant_id: UUID) -> list[RedemptionRequest]:
        """Live requests awaiting staff action at this merchant."""

        stmt = (
            select(RedemptionRequest)
            .options(selectinload(RedemptionRequest.reward), selectinload(RedemptionRequest.member))
            .where(
                RedemptionRequest.merchant_id == merchant_id,
                RedemptionRequest.status == RedemptionStatus.PENDING,
                RedemptionRequest.expires_at > utcnow(),
            )
            .order_by(RedemptionRequest.created_at.asc())
        )
        return list((await self._db.execute(stmt)).scalars().all())

    async def expire_stale_redemptions(self, *, now: datetime | None = None, limit: int | None = None) -> int:
        """Flip every PENDING request past its deadline to EXPIRED.

        Safe to run repeatedly. Flushes only; the caller commits.
        """

        now = now or utcnow()
        candidates = (
            select(RedemptionRequest.id)
            .where(
                RedemptionRequest.status == RedemptionStatus.PENDING,
                RedemptionRequest.expires_at < now,
            )
            .order_by(RedemptionRequest.expires_at.asc())
        )
        if limit:
            candidates = candidates.limit(limit)
        ids = list((await self._db.execute(candidates)).scalars().all())
        if not ids:
            return 0

        result = await self._db.execute(
            update(RedemptionRequest)
            .where(
                RedemptionRequest.id.in_(ids),
                RedemptionRequest.status == RedemptionStatus.PENDING,
            )
            .values(status=RedemptionStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await self._db.flush()
        expired = int(result.rowcount or 0)
        for _ in range(expired):
            self._store.record_transition(RedemptionStatus.EXPIRED.value)
        if expired:
            logger.info("Expired stale redemption requests", count=expired)
        return expired

    async def _get_redemption(self, redemption_id: UUID, *, lock: bool = False) -> RedemptionRequest:
        stmt = select(RedemptionRequest).where(RedemptionRequest.id == redemption_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        redemption = result.scalar_one_or_none()
        if redemption is None:
            raise NotFound("Redemption request not found", redemption_id=str(redemption_id))
        return redemption

    async def _find_pending(self, member_id: UUID, merchant_id: UUID, reward_id: UUID) -> RedemptionRequest | None:
        stmt = (
            select(RedemptionRequest)
            .where(
                RedemptionRequest.member_id == member_id,
                RedemptionRequest.merchant_id == merchant_id,
                RedemptionRequest.reward_id == reward_id,
                RedemptionRequest.status == RedemptionStatus.PENDING,
            )
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def _require_actionable(self, redemption: RedemptionRequest, merchant_id: UUID) -> None:
        """Shared verify/confirm guard: tenant, status, then deadline."""

        if redemption.merchant_id != merchant_id:
            raise WrongMerchant()
        if redemption.status != RedemptionStatus.PENDING:
            raise status_error(redemption.status)
        if is_expired(redemption):
            if await self._transition(redemption.id, RedemptionStatus.EXPIRED):
                await self._db.commit()
                self._store.record_transition(RedemptionStatus.EXPIRED.value)
            raise Expired()

    async def _finish_pending(self, redemption: RedemptionRequest, status: RedemptionStatus, **values: Any) -> None:
        if redemption.status != RedemptionStatus.PENDING:
            raise status_error(redemption.status)
        if not await self._transition(redemption.id, status, **values):
            current = await self._get_redemption(redemption.id)
            raise status_error(current.status)
        await self._db.refresh(redemption)
        self._store.record_transition(status.value)

    async def _transition(self, redemption_id: UUID, status: RedemptionStatus, **values: Any) -> bool:
        result = await self._db.execute(
            update(RedemptionRequest)
            .where(
                RedemptionRequest.id == redemption_id,
                RedemptionRequest.status == RedemptionStatus.PENDING,
            )
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _require_business(self, merchant_id: UUID, business_id: UUID) -> Business:
        business = await self._db.get(Business, business_id)
        if business is None or business.merchant_id != merchant_id:
            raise NotFound("Business location not found", business_id=str(business_id))
        return business

    async def _resolve_business(self, merchant_id: UUID, business_id: UUID | None) -> UUID | None:
        """Override, then the request's location, then the merchant's first location."""

        if business_id is not None:
            return (await self._require_business(merchant_id, business_id)).id
        result = await self._db.execute(
            select(Business.id)
            .where(Business.merchant_id == merchant_id)
            .order_by(Business.created_at.asc(), Business.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _failed(self, operation: str, error: RewardsError) -> OperationResult[Any]:
        self._store.record_failure(operation, error.code)
        logger.bind(operation=operation, code=error.code, **error.context).info(
            "Redemption operation rejected: {message}",
            message=error.message,
        )
        return OperationResult.failure(error)


__all__ = [
    "ConfirmedRedemption",
    "DEFAULT_DECLINE_REASON",
    "RedemptionPreview",
    "RedemptionService",
    "RedemptionTicket",
    "is_expired",
    "qr_payload",
    "status_error",
    "strip_qr_prefix",
]
