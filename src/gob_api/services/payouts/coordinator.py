"""USDC payout settlement for redeemed rewards and point milestones."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from gob_api.core.logging import mask_wallet
from gob_api.core.settings import settings
from gob_api.db.base import ensure_aware, utcnow
from gob_api.models.loyalty import RewardTransaction, TransactionStatus, TransactionType
from gob_api.models.member import Member
from gob_api.models.merchant import Merchant
from gob_api.observability.redemptions import get_redemption_store
from gob_api.services.loyalty.errors import (
    InsufficientBalance,
    InsufficientPoints,
    InvalidState,
    NotFound,
    OperationResult,
    PayoutFailed,
    RewardsError,
    WrongMerchant,
)
from gob_api.services.loyalty.ledger import PointsLedger
from gob_api.services.loyalty.transactions import PayoutTotals, TransactionRecorder
from gob_api.services.notifications import NotificationService

from .client import PayoutTransferClient, TransferRequest, TransferResult, get_transfer_client


BUDGET_EXCEEDED_MESSAGE = "Monthly payout budget exceeded"


def budget_period_start(now: datetime, reset_day: int | None) -> datetime:
    """Start of the budget window containing ``now`` for a 1-28 reset day."""

    day = min(max(reset_day or 1, 1), 28)
    start = now.replace(day=day, hour=0, minute=0, second=0, microsecond=0)
    if now.day < day:
        if now.month == 1:
            start = start.replace(year=now.year - 1, month=12)
        else:
            start = start.replace(month=now.month - 1)
    return start


def _usd(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


@dataclass
class PayoutOutcome:
    transaction_id: UUID
    status: TransactionStatus
    amount_usd: Decimal | None
    tx_hash: str | None
    error_message: str | None

    @classmethod
    def from_transaction(cls, transaction: RewardTransaction) -> "PayoutOutcome":
        return cls(
            transaction_id=transaction.id,
            status=transaction.status,
            amount_usd=transaction.usdc_amount,
            tx_hash=transaction.tx_hash,
            error_message=transaction.error_message,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "transactionId": str(self.transaction_id),
            "status": self.status.value,
            "amountUsd": str(_usd(self.amount_usd)) if self.amount_usd is not None else None,
            "txHash": self.tx_hash,
            "errorMessage": self.error_message,
        }


@dataclass
class MilestoneClaim:
    payout: PayoutOutcome
    points_deducted: int
    new_balance: int
    refunded: bool


@dataclass
class MilestoneEligibility:
    eligible: bool
    current_points: int
    milestone_points: int
    points_needed: int
    payout_amount_usd: Decimal
    has_wallet: bool
    payout_enabled: bool


@dataclass
class BudgetSettings:
    monthly_budget: Decimal | None
    reset_day: int | None
    current_month_payouts: Decimal

    @property
    def remaining(self) -> Decimal | None:
        if self.monthly_budget is None:
            return None
        return max(Decimal("0"), _usd(self.monthly_budget) - _usd(self.current_month_payouts))


@dataclass
class PayoutStats:
    payout_enabled: bool
    wallet_address: str | None
    milestone_points: int
    payout_amount_usd: Decimal
    totals: PayoutTotals
    budget: BudgetSettings
    recent_payouts: list[RewardTransaction]


class PayoutCoordinator:
    """Sends USDC for PENDING payout transactions and settles their status.

    A transfer failure never touches the redemption that produced it: the payout
    row is marked FAILED, operators are alerted, and the row can be retried.
    ``settle`` claims the row and reserves budget in committed steps, so no
    database transaction stays open while the relay call is in flight and a
    second settle of the same row returns without transferring.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        transfer_client: PayoutTransferClient | None = None,
        notification_service: NotificationService | None = None,
        recorder: TransactionRecorder | None = None,
    ) -> None:
        self._db = db_session
        self._client = transfer_client or get_transfer_client()
        self._notifications = notification_service or NotificationService(db_session)
        self._recorder = recorder or TransactionRecorder(db_session)
        self._ledger = PointsLedger(db_session, recorder=self._recorder)
        self._store = get_redemption_store()

    async def dispatch(self, transaction_id: UUID) -> PayoutOutcome:
        """Settle inline or hand the payout to the Celery worker."""

        if settings.payout_dispatch_mode == "celery":
            from gob_api.celery_tasks.payouts import settle_payout

            settle_payout.apply_async(args=[str(transaction_id)], queue=settings.payout_task_queue)
            logger.info("Queued payout settlement", transaction_id=str(transaction_id))
            transaction = await self._require_payout(transaction_id)
            return PayoutOutcome.from_transaction(transaction)
        return await self.settle(transaction_id)

    async def settle(self, transaction_id: UUID) -> PayoutOutcome:
        transaction = await self._require_payout(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            return PayoutOutcome.from_transaction(transaction)
        if not await self._claim(transaction):
            logger.info("Payout settlement already in progress", transaction_id=str(transaction.id))
            return PayoutOutcome.from_transaction(await self._require_payout(transaction_id))

        merchant = await self._db.get(Merchant, transaction.merchant_id)
        amount = _usd(transaction.usdc_amount)

        blocker = self._precondition_error(merchant, transaction, amount)
        if blocker is not None:
            return await self._finish(transaction, merchant, success=False, error_message=blocker)

        await self.roll_budget_window(merchant)
        if not await self._reserve_budget(merchant, amount):
            logger.warning(
                "Payout blocked by monthly budget",
                transaction_id=str(transaction.id),
                merchant_id=str(merchant.id),
                amount_usd=str(amount),
                current_month_payouts=str(merchant.current_month_payouts),
                monthly_budget=str(merchant.monthly_payout_budget),
            )
            return await self._finish(transaction, merchant, success=False, error_message=BUDGET_EXCEEDED_MESSAGE)
        await self._db.commit()

        request = TransferRequest(
            idempotency_key=str(transaction.id),
            merchant_id=str(merchant.id),
            source_wallet=merchant.payout_wallet_address,
            destination_wallet=transaction.wallet_address,
            amount_usd=amount,
            network=settings.payout_network,
        )
        try:
            result = await self._client.send_usdc(request)
        except Exception as exc:
            logger.exception(
                "Payout transfer raised",
                transaction_id=str(transaction.id),
                destination_wallet=transaction.wallet_address,
            )
            result = TransferResult(success=False, error_message=str(exc) or exc.__class__.__name__)

        if not result.success:
            await self._release_budget(merchant, amount)
        return await self._finish(
            transaction,
            merchant,
            success=result.success,
            tx_hash=result.tx_hash,
            error_message=result.error_message,
        )

    async def resolve_settlement_callback(
        self,
        transaction_id: UUID,
        *,
        success: bool,
        tx_hash: str | None = None,
        error_message: str | None = None,
    ) -> PayoutOutcome:
        """Apply an asynchronous settlement report from the relay.

        Repeated callbacks for an already-settled row are no-ops.
        """

        transaction = await self._require_payout(transaction_id)
        if transaction.status != TransactionStatus.PENDING:
            return PayoutOutcome.from_transaction(transaction)

        merchant = await self._db.get(Merchant, transaction.merchant_id)
        return await self._finish(
            transaction,
            merchant,
            success=success,
            tx_hash=tx_hash,
            error_message=error_message,
        )

    async def retry_payout(self, transaction_id: UUID, merchant_id: UUID) -> OperationResult[PayoutOutcome]:
        """Open a fresh PENDING payout for a FAILED one and settle it.

        The failed row stays as history; points are never charged again.
        """

        try:
            failed = await self._require_payout(transaction_id)
            if failed.merchant_id != merchant_id:
                raise WrongMerchant("This payout belongs to a different merchant")
            if failed.status != TransactionStatus.FAILED:
                raise InvalidState("Only failed payouts can be retried", status=failed.status.value)
            if failed.redemption_id is not None:
                await self._ensure_no_live_payout(failed.redemption_id)
        except RewardsError as exc:
            self._store.record_failure("retry_payout", exc.code)
            return OperationResult.failure(exc)

        membership = await self._ledger.get_membership(failed.merchant_id, failed.member_id)
        if membership is None:
            return OperationResult.failure(NotFound("Member ledger not found"))

        member = await self._db.get(Member, failed.member_id)
        try:
            retry = await self._recorder.record(
                membership,
                transaction_type=TransactionType.PAYOUT,
                amount=0,
                reason=f"Retry of payout {failed.id}",
                business_id=failed.business_id,
                redemption_id=failed.redemption_id,
                usdc_amount=failed.usdc_amount,
                status=TransactionStatus.PENDING,
                wallet_address=(member.wallet_address if member else None) or failed.wallet_address,
            )
        except IntegrityError:
            # A concurrent retry opened the live payout for this redemption first.
            await self._db.rollback()
            error = InvalidState("This redemption already has a pending or completed payout")
            self._store.record_failure("retry_payout", error.code)
            logger.warning("Rejected concurrent payout retry", failed_transaction_id=str(failed.id))
            return OperationResult.failure(error)
        await self._db.commit()
        logger.info("Retrying failed payout", failed_transaction_id=str(failed.id), transaction_id=str(retry.id))
        return OperationResult.success(await self.dispatch(retry.id))

    async def get_milestone_eligibility(self, merchant_id: UUID, member_id: UUID) -> MilestoneEligibility:
        merchant = await self._ledger.get_merchant(merchant_id)
        balance = await self._ledger.get_balance(merchant_id, member_id)
        member = await self._db.get(Member, member_id)
        milestone = int(merchant.payout_milestone_points)
        has_wallet = bool(member and member.wallet_address)
        return MilestoneEligibility(
            eligible=balance.points >= milestone and has_wallet and bool(merchant.payout_enabled),
            current_points=balance.points,
            milestone_points=milestone,
            points_needed=max(0, milestone - balance.points),
            payout_amount_usd=_usd(merchant.payout_amount_usd),
            has_wallet=has_wallet,
            payout_enabled=bool(merchant.payout_enabled),
        )

    async def claim_milestone_payout(self, merchant_id: UUID, member_id: UUID) -> OperationResult[MilestoneClaim]:
        """Convert ``payout_milestone_points`` into the merchant's fixed USDC payout.

        Points are debited before the transfer; a failed transfer refunds them
        with an ADJUST row so the member can claim again.
        """

        try:
            merchant = await self._ledger.get_merchant(merchant_id)
            if not merchant.payout_enabled:
                raise PayoutFailed("Payouts are not enabled for this merchant")
            member = await self._db.get(Member, member_id)
            if member is None:
                raise NotFound("Member not found", member_id=str(member_id))
            if not member.wallet_address:
                raise PayoutFailed("Member has no wallet address on file")

            milestone = int(merchant.payout_milestone_points)
            amount = _usd(merchant.payout_amount_usd)
            try:
                entry = await self._ledger.debit(
                    merchant_id,
                    member_id,
                    milestone,
                    f"USDC payout for {milestone} points",
                    transaction_type=TransactionType.PAYOUT,
                    usdc_amount=amount,
                    status=TransactionStatus.PENDING,
                    wallet_address=member.wallet_address,
                )
            except InsufficientBalance as exc:
                raise InsufficientPoints(
                    f"Need {milestone} points to claim a payout",
                    **exc.context,
                ) from exc
        except RewardsError as exc:
            await self._db.rollback()
            self._store.record_failure("claim_milestone_payout", exc.code)
            return OperationResult.failure(exc)

        await self._db.commit()
        logger.info(
            "Milestone payout claimed",
            merchant_id=str(merchant_id),
            member_id=str(member_id),
            transaction_id=str(entry.transaction.id),
            wallet=mask_wallet(member.wallet_address),
        )

        outcome = await self.settle(entry.transaction.id)
        refunded = False
        new_balance = entry.balance.points
        if outcome.status == TransactionStatus.FAILED:
            refund = await self._ledger.credit(
                merchant_id,
                member_id,
                milestone,
                "Refund for failed payout",
                transaction_type=TransactionType.ADJUST,
            )
            await self._db.commit()
            refunded = True
            new_balance = refund.balance.points
            logger.warning(
                "Refunded points after failed milestone payout",
                transaction_id=str(entry.transaction.id),
                refund_transaction_id=str(refund.transaction.id),
            )

        return OperationResult.success(
            MilestoneClaim(
                payout=outcome,
                points_deducted=milestone,
                new_balance=new_balance,
                refunded=refunded,
            )
        )

    async def update_budget(
        self,
        merchant_id: UUID,
        *,
        enabled: bool,
        monthly_budget: Decimal | None = None,
        reset_day: int | None = None,
    ) -> BudgetSettings:
        merchant = await self._ledger.get_merchant(merchant_id)
        if enabled:
            if monthly_budget is None or Decimal(str(monthly_budget)) <= 0:
                raise ValueError("Monthly budget must be greater than 0")
            if reset_day is None or not 1 <= reset_day <= 28:
                raise ValueError("Reset day must be between 1 and 28")
            merchant.monthly_payout_budget = _usd(monthly_budget)
            merchant.payout_budget_reset_day = reset_day
        else:
            merchant.monthly_payout_budget = None
            merchant.payout_budget_reset_day = None
            merchant.current_month_payouts = Decimal("0")
        await self._db.flush()
        logger.info(
            "Updated payout budget",
            merchant_id=str(merchant_id),
            enabled=enabled,
            monthly_budget=str(merchant.monthly_payout_budget),
            reset_day=merchant.payout_budget_reset_day,
        )
        return self._budget(merchant)

    async def get_payout_stats(self, merchant_id: UUID, *, limit: int | None = None) -> PayoutStats:
        merchant = await self._ledger.get_merchant(merchant_id)
        totals = await self._recorder.payout_totals(merchant_id)
        recent = await self._recorder.list_payout_history(
            merchant_id,
            limit=limit or settings.payout_history_limit,
        )
        return PayoutStats(
            payout_enabled=bool(merchant.payout_enabled),
            wallet_address=merchant.payout_wallet_address,
            milestone_points=int(merchant.payout_milestone_points),
            payout_amount_usd=_usd(merchant.payout_amount_usd),
            totals=totals,
            budget=self._budget(merchant),
            recent_payouts=recent,
        )

    async def roll_budget_window(self, merchant: Merchant, *, now: datetime | None = None) -> bool:
        """Zero ``current_month_payouts`` once the reset day has passed."""

        if merchant.monthly_payout_budget is None:
            return False
        now = now or utcnow()
        period_start = budget_period_start(now, merchant.payout_budget_reset_day)
        last_reset = merchant.last_budget_reset_at
        if last_reset is not None and ensure_aware(last_reset) >= period_start:
            return False

        result = await self._db.execute(
            update(Merchant)
            .where(
                Merchant.id == merchant.id,
                or_(Merchant.last_budget_reset_at.is_(None), Merchant.last_budget_reset_at < period_start),
            )
            .values(current_month_payouts=0, last_budget_reset_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(merchant, attribute_names=["current_month_payouts", "last_budget_reset_at"])
        if result.rowcount == 1:
            logger.info("Reset monthly payout budget", merchant_id=str(merchant.id), period_start=period_start.isoformat())
            return True
        return False

    async def roll_all_budget_windows(self, *, now: datetime | None = None) -> int:
        result = await self._db.execute(select(Merchant).where(Merchant.monthly_payout_budget.is_not(None)))
        rolled = 0
        for merchant in result.scalars().all():
            if await self.roll_budget_window(merchant, now=now):
                rolled += 1
        return rolled

    async def _require_payout(self, transaction_id: UUID) -> RewardTransaction:
        transaction = await self._db.get(RewardTransaction, transaction_id, populate_existing=True)
        if transaction is None or transaction.type != TransactionType.PAYOUT:
            raise NotFound("Payout transaction not found", transaction_id=str(transaction_id))
        return transaction

    async def _claim(self, transaction: RewardTransaction) -> bool:
        """Stamp a PENDING payout as being settled; exactly one caller wins."""

        result = await self._db.execute(
            update(RewardTransaction)
            .where(
                RewardTransaction.id == transaction.id,
                RewardTransaction.status == TransactionStatus.PENDING,
                RewardTransaction.settle_started_at.is_(None),
            )
            .values(settle_started_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._db.commit()
        return result.rowcount == 1

    async def _ensure_no_live_payout(self, redemption_id: UUID) -> None:
        stmt = select(RewardTransaction.id).where(
            RewardTransaction.redemption_id == redemption_id,
            RewardTransaction.type == TransactionType.PAYOUT,
            RewardTransaction.status.in_([TransactionStatus.PENDING, TransactionStatus.SUCCESS]),
        )
        if (await self._db.execute(stmt)).first() is not None:
            raise InvalidState("This redemption already has a pending or completed payout")

    @staticmethod
    def _precondition_error(
        merchant: Merchant | None,
        transaction: RewardTransaction,
        amount: Decimal,
    ) -> str | None:
        if merchant is None:
            return "Merchant not found"
        if not merchant.payout_enabled:
            return "Payouts are not enabled for this merchant"
        if not merchant.payout_wallet_address:
            return "Merchant payout wallet is not configured"
        if not transaction.wallet_address:
            return "Member has no wallet address on file"
        if amount <= 0:
            return "Payout amount must be positive"
        return None

    async def _reserve_budget(self, merchant: Merchant, amount: Decimal) -> bool:
        if merchant.monthly_payout_budget is None:
            await self._charge_budget(merchant, amount)
            return True
        result = await self._db.execute(
            update(Merchant)
            .where(
                Merchant.id == merchant.id,
                Merchant.current_month_payouts + amount <= Merchant.monthly_payout_budget,
            )
            .values(current_month_payouts=Merchant.current_month_payouts + amount)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(merchant, attribute_names=["current_month_payouts"])
        return result.rowcount == 1

    async def _charge_budget(self, merchant: Merchant, amount: Decimal) -> None:
        await self._db.execute(
            update(Merchant)
            .where(Merchant.id == merchant.id)
            .values(current_month_payouts=Merchant.current_month_payouts + amount)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(merchant, attribute_names=["current_month_payouts"])

    async def _release_budget(self, merchant: Merchant, amount: Decimal) -> None:
        await self._db.execute(
            update(Merchant)
            .where(Merchant.id == merchant.id)
            .values(current_month_payouts=Merchant.current_month_payouts - amount)
            .execution_options(synchronize_session=False)
        )
        await self._db.refresh(merchant, attribute_names=["current_month_payouts"])

    async def _finish(
        self,
        transaction: RewardTransaction,
        merchant: Merchant | None,
        *,
        success: bool,
        tx_hash: str | None = None,
        error_message: str | None = None,
    ) -> PayoutOutcome:
        settled, applied = await self._recorder.resolve_payout(
            transaction.id,
            success=success,
            tx_hash=tx_hash,
            error_message=error_message,
        )
        await self._db.commit()

        if applied:
            outcome = "success" if success else "failed"
            self._store.record_payout(outcome, settled.usdc_amount)
            log = logger.bind(
                transaction_id=str(settled.id),
                merchant_id=str(settled.merchant_id),
                amount_usd=str(settled.usdc_amount),
                wallet=mask_wallet(settled.wallet_address),
            )
            if success:
                log.info("Payout settled", tx_hash=tx_hash)
            else:
                log.warning("Payout failed", error_message=settled.error_message)
            if merchant is not None:
                await self._notify(settled, merchant, success=success)
        return PayoutOutcome.from_transaction(settled)

    async def _notify(self, transaction: RewardTransaction, merchant: Merchant, *, success: bool) -> None:
        try:
            if success:
                await self._notifications.send_payout_success(transaction, merchant)
            else:
                await self._notifications.send_payout_failure_alert(transaction, merchant)
        except Exception:
            logger.exception(
                "Failed to send payout notification",
                transaction_id=str(transaction.id),
                success=success,
            )

    @staticmethod
    def _budget(merchant: Merchant) -> BudgetSettings:
        return BudgetSettings(
            monthly_budget=merchant.monthly_payout_budget,
            reset_day=merchant.payout_budget_reset_day,
            current_month_payouts=_usd(merchant.current_month_payouts),
        )


__all__ = [
    "BUDGET_EXCEEDED_MESSAGE",
    "BudgetSettings",
    "MilestoneClaim",
    "MilestoneEligibility",
    "PayoutCoordinator",
    "PayoutOutcome",
    "PayoutStats",
    "budget_period_start",
]
