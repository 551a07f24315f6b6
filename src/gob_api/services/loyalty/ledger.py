"""Merchant-level points ledger: balances, tiers, credits, and debits."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.models.loyalty import RewardTransaction, TransactionStatus, TransactionType
from gob_api.models.member import Member, MemberTier, MerchantMember
from gob_api.models.merchant import Merchant

from .errors import InsufficientBalance, NotFound
from .transactions import TransactionRecorder


def recompute_tier(points: int, vip_threshold: int, super_threshold: int) -> MemberTier:
    """Derive the tier for a balance against the merchant's current thresholds."""

    if points >= super_threshold:
        return MemberTier.SUPER
    if points >= vip_threshold:
        return MemberTier.VIP
    return MemberTier.BASE


def next_tier_target(points: int, vip_threshold: int, super_threshold: int) -> tuple[MemberTier | None, int]:
    """Return the next tier above ``points`` and how many points it still needs."""

    if points < vip_threshold:
        return MemberTier.VIP, vip_threshold - points
    if points < super_threshold:
        return MemberTier.SUPER, super_threshold - points
    return None, 0


@dataclass
class LedgerBalance:
    """Serializable view of a member's standing at one merchant."""

    merchant_member_id: UUID
    merchant_id: UUID
    member_id: UUID
    points: int
    tier: MemberTier
    next_tier: MemberTier | None
    points_to_next_tier: int
    member_note: str | None


@dataclass
class LedgerEntry:
    """Result of a balance change."""

    transaction: RewardTransaction
    balance: LedgerBalance
    requested_delta: int
    applied_delta: int
    previous_tier: MemberTier

    @property
    def tier_changed(self) -> bool:
        return self.previous_tier != self.balance.tier


def _require_positive_points(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError("Point amounts must be positive integers")


class PointsLedger:
    """Maintains MerchantMember balances; every change writes one transaction."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        recorder: TransactionRecorder | None = None,
    ) -> None:
        self._db = db_session
        self._recorder = recorder or TransactionRecorder(db_session)

    @property
    def recorder(self) -> TransactionRecorder:
        return self._recorder

    async def get_merchant(self, merchant_id: UUID) -> Merchant:
        merchant = await self._db.get(Merchant, merchant_id)
        if merchant is None:
            raise NotFound("Merchant not found", merchant_id=str(merchant_id))
        return merchant

    async def get_membership(
        self,
        merchant_id: UUID,
        member_id: UUID,
        *,
        lock: bool = False,
    ) -> MerchantMember | None:
        stmt = select(MerchantMember).where(
            MerchantMember.merchant_id == merchant_id,
            MerchantMember.member_id == member_id,
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self._db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def ensure_membership(
        self,
        merchant_id: UUID,
        member_id: UUID,
        *,
        lock: bool = False,
    ) -> MerchantMember:
        """Fetch the ledger row, creating it at zero points on first touch."""

        membership = await self.get_membership(merchant_id, member_id, lock=lock)
        if membership is not None:
            return membership

        await self.get_merchant(merchant_id)
        if await self._db.get(Member, member_id) is None:
            raise NotFound("Member not found", member_id=str(member_id))

        membership = MerchantMember(
            merchant_id=merchant_id,
            member_id=member_id,
            points=0,
            tier=MemberTier.BASE,
        )
        self._db.add(membership)
        try:
            await self._db.flush()
        except IntegrityError:
            await self._db.rollback()
            logger.warning(
                "Detected race when creating merchant membership",
                merchant_id=str(merchant_id),
                member_id=str(member_id),
            )
            existing = await self.get_membership(merchant_id, member_id, lock=lock)
            if existing is None:
                raise
            return existing

        logger.info(
            "Created merchant membership",
            merchant_id=str(merchant_id),
            member_id=str(member_id),
            merchant_member_id=str(membership.id),
        )
        return membership

    async def get_balance(self, merchant_id: UUID, member_id: UUID) -> LedgerBalance:
        merchant = await self.get_merchant(merchant_id)
        membership = await self.ensure_membership(merchant_id, member_id)
        return self._snapshot(membership, merchant)

    async def credit(
        self,
        merchant_id: UUID,
        member_id: UUID,
        amount: int,
        reason: str,
        *,
        transaction_type: TransactionType = TransactionType.EARN,
        business_id: UUID | None = None,
    ) -> LedgerEntry:
        """Add points. No upper bound."""

        _require_positive_points(amount)
        if transaction_type not in (TransactionType.EARN, TransactionType.ADJUST):
            raise ValueError("Credits must be EARN or ADJUST transactions")

        merchant = await self.get_merchant(merchant_id)
        membership = await self.ensure_membership(merchant_id, member_id, lock=True)
        previous_tier = membership.tier

        await self._db.execute(
            update(MerchantMember)
            .where(MerchantMember.id == membership.id)
            .values(points=MerchantMember.points + amount)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(membership, attribute_names=["points"])
        self._apply_tier(membership, merchant)

        transaction = await self._recorder.record(
            membership,
            transaction_type=transaction_type,
            amount=amount,
            reason=reason,
            business_id=business_id,
        )
        return LedgerEntry(
            transaction=transaction,
            balance=self._snapshot(membership, merchant),
            requested_delta=amount,
            applied_delta=amount,
            previous_tier=previous_tier,
        )

    async def debit(
        self,
        merchant_id: UUID,
        member_id: UUID,
        amount: int,
        reason: str,
        *,
        transaction_type: TransactionType = TransactionType.REDEEM,
        business_id: UUID | None = None,
        redemption_id: UUID | None = None,
        usdc_amount: Decimal | None = None,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        wallet_address: str | None = None,
    ) -> LedgerEntry:
        """Remove points, refusing when the balance is short.

        The row is locked first and the decrement is conditional on
        ``points >= amount`` so concurrent debits cannot overdraw it.
        """

        _require_positive_points(amount)
        if transaction_type not in (TransactionType.REDEEM, TransactionType.ADJUST, TransactionType.PAYOUT):
            raise ValueError("Debits must be REDEEM, ADJUST, or PAYOUT transactions")

        merchant = await self.get_merchant(merchant_id)
        membership = await self.ensure_membership(merchant_id, member_id, lock=True)
        previous_tier = membership.tier

        if int(membership.points or 0) < amount:
            raise InsufficientBalance(
                available=int(membership.points or 0),
                required=amount,
            )

        result = await self._db.execute(
            update(MerchantMember)
            .where(MerchantMember.id == membership.id, MerchantMember.points >= amount)
            .values(points=MerchantMember.points - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self._db.refresh(membership, attribute_names=["points"])
            raise InsufficientBalance(available=int(membership.points or 0), required=amount)

        await self._db.refresh(membership, attribute_names=["points"])
        self._apply_tier(membership, merchant)

        transaction = await self._recorder.record(
            membership,
            transaction_type=transaction_type,
            amount=-amount if transaction_type == TransactionType.ADJUST else amount,
            reason=reason,
            business_id=business_id,
            redemption_id=redemption_id,
            points_deducted=amount,
            usdc_amount=usdc_amount,
            status=status,
            wallet_address=wallet_address,
        )
        return LedgerEntry(
            transaction=transaction,
            balance=self._snapshot(membership, merchant),
            requested_delta=-amount,
            applied_delta=-amount,
            previous_tier=previous_tier,
        )

    async def adjust(
        self,
        merchant_id: UUID,
        member_id: UUID,
        delta: int,
        reason: str,
        *,
        business_id: UUID | None = None,
    ) -> LedgerEntry:
        """Staff correction. Negative deltas clamp at zero instead of failing."""

        if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
            raise ValueError("Adjustments require a non-zero integer")
        if not reason or not reason.strip():
            raise ValueError("Adjustments require a reason")

        merchant = await self.get_merchant(merchant_id)
        membership = await self.ensure_membership(merchant_id, member_id, lock=True)
        previous_tier = membership.tier

        current = int(membership.points or 0)
        new_points = max(0, current + delta)
        applied = new_points - current
        membership.points = new_points
        self._apply_tier(membership, merchant)
        await self._db.flush()

        transaction = await self._recorder.record(
            membership,
            transaction_type=TransactionType.ADJUST,
            amount=applied,
            reason=reason.strip(),
            business_id=business_id,
            points_deducted=-applied if applied < 0 else None,
        )
        if applied != delta:
            logger.info(
                "Clamped points adjustment at zero",
                merchant_member_id=str(membership.id),
                requested=delta,
                applied=applied,
            )
        return LedgerEntry(
            transaction=transaction,
            balance=self._snapshot(membership, merchant),
            requested_delta=delta,
            applied_delta=applied,
            previous_tier=previous_tier,
        )

    async def set_member_note(self, merchant_id: UUID, member_id: UUID, note: str | None) -> LedgerBalance:
        """Store the member's own note shown to staff on redemption."""

        merchant = await self.get_merchant(merchant_id)
        membership = await self.ensure_membership(merchant_id, member_id)
        cleaned = (note or "").strip()
        membership.member_note = cleaned[:500] or None
        await self._db.flush()
        return self._snapshot(membership, merchant)

    def _apply_tier(self, membership: MerchantMember, merchant: Merchant) -> None:
        tier = recompute_tier(
            int(membership.points or 0),
            int(merchant.vip_threshold),
            int(merchant.super_threshold),
        )
        if tier != membership.tier:
            logger.info(
                "Member tier changed",
                merchant_member_id=str(membership.id),
                previous_tier=membership.tier.value if membership.tier else None,
                tier=tier.value,
                points=membership.points,
            )
            membership.tier = tier

    @staticmethod
    def _snapshot(membership: MerchantMember, merchant: Merchant) -> LedgerBalance:
        points = int(membership.points or 0)
        next_tier, remaining = next_tier_target(
            points,
            int(merchant.vip_threshold),
            int(merchant.super_threshold),
        )
        return LedgerBalance(
            merchant_member_id=membership.id,
            merchant_id=membership.merchant_id,
            member_id=membership.member_id,
            points=points,
            tier=membership.tier,
            next_tier=next_tier,
            points_to_next_tier=remaining,
            member_note=membership.member_note,
        )


__all__ = [
    "LedgerBalance",
    "LedgerEntry",
    "PointsLedger",
    "next_tier_target",
    "recompute_tier",
]
