"""Append-only reward transaction log and its location-level projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence
from uuid import UUID

from loguru import logger
from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.models.loyalty import RewardTransaction, TransactionStatus, TransactionType
from gob_api.models.member import BusinessMember, MerchantMember

from .errors import NotFound


@dataclass
class ReconciliationReport:
    """Advisory comparison between the stored balance and the transaction log."""

    merchant_member_id: UUID
    stored_points: int
    ledger_points: int
    transaction_count: int

    @property
    def drift(self) -> int:
        return self.stored_points - self.ledger_points

    @property
    def is_consistent(self) -> bool:
        return self.drift == 0


@dataclass
class PayoutTotals:
    total_paid_out: Decimal
    total_payouts: int
    failed_payouts: int
    pending_payouts: int


class TransactionRecorder:
    """Writes RewardTransaction rows; the only mutation allowed is settling a PAYOUT."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def record(
        self,
        merchant_member: MerchantMember,
        *,
        transaction_type: TransactionType,
        amount: int,
        reason: str | None = None,
        business_id: UUID | None = None,
        redemption_id: UUID | None = None,
        points_deducted: int | None = None,
        usdc_amount: Decimal | None = None,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        wallet_address: str | None = None,
    ) -> RewardTransaction:
        """Append a transaction and update the location projection."""

        transaction = RewardTransaction(
            merchant_member_id=merchant_member.id,
            merchant_id=merchant_member.merchant_id,
            member_id=merchant_member.member_id,
            business_id=business_id,
            redemption_id=redemption_id,
            type=transaction_type,
            amount=amount,
            points_deducted=points_deducted,
            usdc_amount=usdc_amount,
            reason=reason,
            status=status,
            wallet_address=wallet_address,
        )
        self._db.add(transaction)

        if business_id is not None and transaction_type in (TransactionType.EARN, TransactionType.REDEEM):
            await self._project_business_activity(business_id, merchant_member.member_id, transaction_type)

        await self._db.flush()
        logger.info(
            "Recorded reward transaction",
            transaction_id=str(transaction.id),
            merchant_member_id=str(merchant_member.id),
            type=transaction_type.value,
            amount=amount,
            status=status.value,
        )
        return transaction

    async def resolve_payout(
        self,
        transaction_id: UUID,
        *,
        success: bool,
        tx_hash: str | None = None,
        error_message: str | None = None,
    ) -> tuple[RewardTransaction, bool]:
        """Flip a PENDING payout to SUCCESS or FAILED.

        Returns the row and whether this call performed the transition. Repeated
        settlement callbacks leave an already-resolved row untouched.
        """

        new_status = TransactionStatus.SUCCESS if success else TransactionStatus.FAILED
        stmt = (
            update(RewardTransaction)
            .where(
                RewardTransaction.id == transaction_id,
                RewardTransaction.type == TransactionType.PAYOUT,
                RewardTransaction.status == TransactionStatus.PENDING,
            )
            .values(
                status=new_status,
                tx_hash=tx_hash if success else None,
                error_message=None if success else (error_message or "Payout failed"),
                settled_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._db.execute(stmt)
        applied = result.rowcount == 1

        transaction = await self._db.get(RewardTransaction, transaction_id, populate_existing=True)
        if transaction is None:
            raise NotFound("Payout transaction not found", transaction_id=str(transaction_id))

        if applied:
            logger.info(
                "Resolved payout transaction",
                transaction_id=str(transaction_id),
                status=new_status.value,
                tx_hash=tx_hash,
            )
        else:
            logger.info(
                "Ignoring duplicate payout settlement",
                transaction_id=str(transaction_id),
                status=transaction.status.value,
            )
        return transaction, applied

    async def get(self, transaction_id: UUID) -> RewardTransaction | None:
        return await self._db.get(RewardTransaction, transaction_id)

    async def list_member_transactions(
        self,
        merchant_member_id: UUID,
        *,
        limit: int = 50,
        types: Sequence[TransactionType] | None = None,
    ) -> list[RewardTransaction]:
        stmt = (
            select(RewardTransaction)
            .where(RewardTransaction.merchant_member_id == merchant_member_id)
            .order_by(RewardTransaction.created_at.desc(), RewardTransaction.id.desc())
            .limit(limit)
        )
        if types:
            stmt = stmt.where(RewardTransaction.type.in_(list(types)))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def list_payout_history(
        self,
        merchant_id: UUID,
        *,
        limit: int = 10,
        statuses: Sequence[TransactionStatus] | None = None,
    ) -> list[RewardTransaction]:
        stmt = (
            select(RewardTransaction)
            .where(
                RewardTransaction.merchant_id == merchant_id,
                RewardTransaction.type == TransactionType.PAYOUT,
            )
            .order_by(RewardTransaction.created_at.desc(), RewardTransaction.id.desc())
            .limit(limit)
        )
        if statuses:
            stmt = stmt.where(RewardTransaction.status.in_(list(statuses)))
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def payout_totals(self, merchant_id: UUID) -> PayoutTotals:
        stmt = (
            select(
                RewardTransaction.status,
                func.count(RewardTransaction.id),
                func.coalesce(func.sum(RewardTransaction.usdc_amount), 0),
            )
            .where(
                RewardTransaction.merchant_id == merchant_id,
                RewardTransaction.type == TransactionType.PAYOUT,
            )
            .group_by(RewardTransaction.status)
        )
        result = await self._db.execute(stmt)
        counts: dict[TransactionStatus, int] = {}
        paid_out = Decimal("0")
        for status, count, total in result.all():
            counts[status] = int(count)
            if status == TransactionStatus.SUCCESS:
                paid_out = Decimal(str(total))
        return PayoutTotals(
            total_paid_out=paid_out.quantize(Decimal("0.01")),
            total_payouts=counts.get(TransactionStatus.SUCCESS, 0),
            failed_payouts=counts.get(TransactionStatus.FAILED, 0),
            pending_payouts=counts.get(TransactionStatus.PENDING, 0),
        )

    async def reconcile(self, merchant_member: MerchantMember) -> ReconciliationReport:
        """Compare the net of the transaction log with the stored balance.

        Report-only: the stored balance stays authoritative.
        """

        signed = case(
            (RewardTransaction.type == TransactionType.REDEEM, -RewardTransaction.amount),
            (RewardTransaction.type == TransactionType.PAYOUT, -func.coalesce(RewardTransaction.points_deducted, 0)),
            else_=RewardTransaction.amount,
        )
        stmt = select(
            func.coalesce(func.sum(signed), 0),
            func.count(RewardTransaction.id),
        ).where(RewardTransaction.merchant_member_id == merchant_member.id)
        ledger_points, count = (await self._db.execute(stmt)).one()
        report = ReconciliationReport(
            merchant_member_id=merchant_member.id,
            stored_points=int(merchant_member.points or 0),
            ledger_points=int(ledger_points or 0),
            transaction_count=int(count or 0),
        )
        if not report.is_consistent:
            logger.warning(
                "Ledger drift detected",
                merchant_member_id=str(merchant_member.id),
                stored_points=report.stored_points,
                ledger_points=report.ledger_points,
            )
        return report

    async def _project_business_activity(
        self,
        business_id: UUID,
        member_id: UUID,
        transaction_type: TransactionType,
    ) -> None:
        stmt = select(BusinessMember).where(
            BusinessMember.business_id == business_id,
            BusinessMember.member_id == member_id,
        )
        projection = (await self._db.execute(stmt)).scalar_one_or_none()
        if projection is None:
            projection = BusinessMember(
                business_id=business_id,
                member_id=member_id,
                visit_count=0,
                redemption_count=0,
            )
            self._db.add(projection)

        if transaction_type == TransactionType.EARN:
            projection.visit_count = (projection.visit_count or 0) + 1
        else:
            projection.redemption_count = (projection.redemption_count or 0) + 1
        projection.last_activity_at = datetime.now(timezone.utc)


__all__ = ["PayoutTotals", "ReconciliationReport", "TransactionRecorder"]
