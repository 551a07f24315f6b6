import asyncio
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import select

from factories import seed_member, seed_merchant, seed_reward
from gob_api.core.settings import settings
from gob_api.models.loyalty import (
    RedemptionRequest,
    RedemptionStatus,
    RewardTransaction,
    TransactionStatus,
    TransactionType,
)
from gob_api.models.merchant import Merchant
from gob_api.observability.redemptions import get_redemption_store
from gob_api.services.loyalty import PointsLedger
from gob_api.services.loyalty.redemptions import RedemptionService
from gob_api.services.notifications import InMemoryEmailBackend, NotificationService
from gob_api.services.payouts import (
    HttpPayoutTransferClient,
    InMemoryPayoutTransferClient,
    PayoutCoordinator,
    TransferRequest,
    budget_period_start,
)
from gob_api.services.payouts.coordinator import BUDGET_EXCEEDED_MESSAGE


MERCHANT_WALLET = "0x1111111111111111111111111111111111111111"
MEMBER_WALLET = "0x2222222222222222222222222222222222222222"


async def _usdc_setup(session_factory, *, payout_enabled: bool = True, points: int = 200):
    async with session_factory() as session:
        merchant = await seed_merchant(
            session,
            payout_enabled=payout_enabled,
            payout_wallet_address=MERCHANT_WALLET,
        )
        member = await seed_member(session, merchant, points=points, wallet_address=MEMBER_WALLET)
        reward = await seed_reward(session, merchant, name="Five Dollars", points_cost=100, usdc_amount=Decimal("5.00"))
        await session.commit()
        return merchant.id, member.id, reward.id


def _coordinator(session, client, backend=None) -> PayoutCoordinator:
    return PayoutCoordinator(
        session,
        transfer_client=client,
        notification_service=NotificationService(session, backend=backend or InMemoryEmailBackend()),
    )


async def _redeem(session_factory, client, merchant_id, member_id, reward_id, backend=None):
    async with session_factory() as session:
        created = await RedemptionService(session).create_redemption_request(member_id, merchant_id, reward_id)
    assert created.ok, created.message

    async with session_factory() as session:
        service = RedemptionService(session, payout_coordinator=_coordinator(session, client, backend))
        result = await service.confirm_redemption(created.value.redemption.id, merchant_id)
    assert result.ok, result.message
    return result.value


async def _payouts(session_factory) -> list[RewardTransaction]:
    async with session_factory() as session:
        stmt = (
            select(RewardTransaction)
            .where(RewardTransaction.type == TransactionType.PAYOUT)
            .order_by(RewardTransaction.created_at.asc())
        )
        return list((await session.execute(stmt)).scalars().all())


async def _merchant(session_factory, merchant_id) -> Merchant:
    async with session_factory() as session:
        return await session.get(Merchant, merchant_id)


def test_budget_period_start_handles_reset_day_and_year_boundary() -> None:
    assert budget_period_start(datetime(2026, 3, 20, 9, tzinfo=timezone.utc), 15) == datetime(
        2026, 3, 15, tzinfo=timezone.utc
    )
    assert budget_period_start(datetime(2026, 3, 10, 9, tzinfo=timezone.utc), 15) == datetime(
        2026, 2, 15, tzinfo=timezone.utc
    )
    assert budget_period_start(datetime(2026, 1, 5, tzinfo=timezone.utc), 10) == datetime(
        2025, 12, 10, tzinfo=timezone.utc
    )
    assert budget_period_start(datetime(2026, 7, 1, 12, tzinfo=timezone.utc), None) == datetime(
        2026, 7, 1, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_usdc_redemption_settles_and_sends_receipt(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    client = InMemoryPayoutTransferClient()
    backend = InMemoryEmailBackend()

    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id, backend)

    assert confirmed.new_balance == 100
    assert confirmed.payout is not None
    assert confirmed.payout.status == TransactionStatus.SUCCESS
    assert confirmed.payout.tx_hash.startswith("0x")
    assert confirmed.as_dict()["payout"]["amountUsd"] == "5.00"

    assert len(client.requests) == 1
    request = client.requests[0]
    assert request.destination_wallet == MEMBER_WALLET
    assert request.source_wallet == MERCHANT_WALLET
    assert request.amount_usd == Decimal("5.00")
    assert request.idempotency_key == str(confirmed.payout.transaction_id)

    (payout,) = await _payouts(session_factory)
    assert payout.amount == 0
    assert payout.points_deducted is None
    assert payout.settled_at is not None

    merchant = await _merchant(session_factory, merchant_id)
    assert Decimal(str(merchant.current_month_payouts)) == Decimal("5.00")

    assert [message["Subject"] for message in backend.sent_messages] == ["You received $5.00 USDC from Corner Cafe"]
    assert get_redemption_store().snapshot().payouts == {"success": 1}


@pytest.mark.asyncio
async def test_failed_transfer_keeps_redemption_confirmed(session_factory, monkeypatch) -> None:
    monkeypatch.setattr(settings, "payout_alert_recipients", ["ops@example.com"])
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    client = InMemoryPayoutTransferClient(fail_with="Relay unavailable")
    backend = InMemoryEmailBackend()

    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id, backend)

    assert confirmed.new_balance == 100
    assert confirmed.payout.status == TransactionStatus.FAILED
    assert confirmed.payout.error_message == "Relay unavailable"

    async with session_factory() as session:
        redemption = (await session.execute(select(RedemptionRequest))).scalar_one()
        assert redemption.status == RedemptionStatus.CONFIRMED
        balance = await PointsLedger(session).get_balance(merchant_id, member_id)
        assert balance.points == 100

    merchant = await _merchant(session_factory, merchant_id)
    assert Decimal(str(merchant.current_month_payouts)) == Decimal("0.00")

    assert [message["To"] for message in backend.sent_messages] == ["ops@example.com"]
    assert backend.sent_messages[0]["Subject"] == "[GOB] Payout failed for Corner Cafe ($5.00)"


@pytest.mark.asyncio
async def test_transfer_exception_is_recorded_as_failure(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    client = InMemoryPayoutTransferClient(raise_error=RuntimeError("socket closed"))

    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id)

    assert confirmed.payout.status == TransactionStatus.FAILED
    assert confirmed.payout.error_message == "socket closed"


@pytest.mark.asyncio
async def test_disabled_payouts_fail_without_calling_relay(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory, payout_enabled=False)
    client = InMemoryPayoutTransferClient()

    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id)

    assert confirmed.payout.status == TransactionStatus.FAILED
    assert confirmed.payout.error_message == "Payouts are not enabled for this merchant"
    assert client.requests == []


@pytest.mark.asyncio
async def test_budget_exceeded_blocks_transfer(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    async with session_factory() as session:
        budget = await _coordinator(session, InMemoryPayoutTransferClient()).update_budget(
            merchant_id,
            enabled=True,
            monthly_budget=Decimal("4"),
            reset_day=1,
        )
        await session.commit()
    assert budget.remaining == Decimal("4.00")

    client = InMemoryPayoutTransferClient()
    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id)

    assert confirmed.payout.status == TransactionStatus.FAILED
    assert confirmed.payout.error_message == BUDGET_EXCEEDED_MESSAGE
    assert client.requests == []
    merchant = await _merchant(session_factory, merchant_id)
    assert Decimal(str(merchant.current_month_payouts)) == Decimal("0.00")


@pytest.mark.asyncio
async def test_update_budget_validates_and_disable_resets_counter(session_factory) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session)
        merchant.current_month_payouts = Decimal("12.50")
        await session.commit()

        coordinator = _coordinator(session, InMemoryPayoutTransferClient())
        with pytest.raises(ValueError):
            await coordinator.update_budget(merchant.id, enabled=True, monthly_budget=Decimal("0"), reset_day=1)
        with pytest.raises(ValueError):
            await coordinator.update_budget(merchant.id, enabled=True, monthly_budget=Decimal("50"), reset_day=29)

        budget = await coordinator.update_budget(merchant.id, enabled=False)
        await session.commit()

    assert budget.monthly_budget is None
    assert budget.remaining is None
    assert budget.current_month_payouts == Decimal("0.00")


@pytest.mark.asyncio
async def test_settle_is_idempotent(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    client = InMemoryPayoutTransferClient()
    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id)

    async with session_factory() as session:
        again = await _coordinator(session, client).settle(confirmed.payout.transaction_id)

    assert again.status == TransactionStatus.SUCCESS
    assert again.tx_hash == confirmed.payout.tx_hash
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_settlement_callback_applies_once(session_factory) -> None:
    merchant_id, member_id, _ = await _usdc_setup(session_factory)
    async with session_factory() as session:
        ledger = PointsLedger(session)
        membership = await ledger.get_membership(merchant_id, member_id)
        pending = await ledger.recorder.record(
            membership,
            transaction_type=TransactionType.PAYOUT,
            amount=0,
            reason="USDC payout: Five Dollars",
            usdc_amount=Decimal("5.00"),
            status=TransactionStatus.PENDING,
            wallet_address=MEMBER_WALLET,
        )
        await session.commit()
        pending_id = pending.id

    async with session_factory() as session:
        first = await _coordinator(session, InMemoryPayoutTransferClient()).resolve_settlement_callback(
            pending_id,
            success=True,
            tx_hash="0xfeed",
        )
    async with session_factory() as session:
        second = await _coordinator(session, InMemoryPayoutTransferClient()).resolve_settlement_callback(
            pending_id,
            success=False,
            error_message="late failure report",
        )

    assert first.status == TransactionStatus.SUCCESS
    assert second.status == TransactionStatus.SUCCESS
    assert second.tx_hash == "0xfeed"
    assert second.error_message is None
    assert get_redemption_store().snapshot().payouts == {"success": 1}


@pytest.mark.asyncio
async def test_retry_opens_new_payout_and_guards_duplicates(session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    confirmed = await _redeem(
        session_factory,
        InMemoryPayoutTransferClient(fail_with="Relay unavailable"),
        merchant_id,
        member_id,
        reward_id,
    )
    failed_id = confirmed.payout.transaction_id

    async with session_factory() as session:
        other = await seed_merchant(session, slug="rival-bakery")
        await session.commit()
        other_id = other.id

    async with session_factory() as session:
        foreign = await _coordinator(session, InMemoryPayoutTransferClient()).retry_payout(failed_id, other_id)
    assert foreign.error_code == "wrong_merchant"

    client = InMemoryPayoutTransferClient()
    async with session_factory() as session:
        retried = await _coordinator(session, client).retry_payout(failed_id, merchant_id)
    assert retried.ok
    assert retried.value.status == TransactionStatus.SUCCESS
    assert retried.value.transaction_id != failed_id

    async with session_factory() as session:
        duplicate = await _coordinator(session, client).retry_payout(failed_id, merchant_id)
    assert duplicate.error_code == "invalid_state"

    async with session_factory() as session:
        not_failed = await _coordinator(session, client).retry_payout(retried.value.transaction_id, merchant_id)
    assert not_failed.error_code == "invalid_state"
    assert not_failed.message == "Only failed payouts can be retried"

    payouts = await _payouts(session_factory)
    assert [payout.status for payout in payouts] == [TransactionStatus.FAILED, TransactionStatus.SUCCESS]
    assert payouts[1].reason == f"Retry of payout {failed_id}"

    async with session_factory() as session:
        balance = await PointsLedger(session).get_balance(merchant_id, member_id)
    assert balance.points == 100


@pytest.mark.asyncio
async def test_milestone_claim_debits_points_and_pays(session_factory) -> None:
    merchant_id, member_id, _ = await _usdc_setup(session_factory, points=0)
    async with session_factory() as session:
        await PointsLedger(session).credit(merchant_id, member_id, 150, "Visits")
        await session.commit()

    client = InMemoryPayoutTransferClient()
    async with session_factory() as session:
        coordinator = _coordinator(session, client)
        eligibility = await coordinator.get_milestone_eligibility(merchant_id, member_id)
        assert eligibility.eligible
        assert eligibility.points_needed == 0
        result = await coordinator.claim_milestone_payout(merchant_id, member_id)

    assert result.ok
    assert result.value.points_deducted == 100
    assert result.value.new_balance == 50
    assert not result.value.refunded
    assert result.value.payout.status == TransactionStatus.SUCCESS

    (payout,) = await _payouts(session_factory)
    assert payout.points_deducted == 100
    assert payout.usdc_amount == Decimal("5.00")

    async with session_factory() as session:
        ledger = PointsLedger(session)
        report = await ledger.recorder.reconcile(await ledger.get_membership(merchant_id, member_id))
    assert report.is_consistent
    assert report.ledger_points == 50


@pytest.mark.asyncio
async def test_failed_milestone_claim_refunds_points(session_factory) -> None:
    merchant_id, member_id, _ = await _usdc_setup(session_factory, points=0)
    async with session_factory() as session:
        await PointsLedger(session).credit(merchant_id, member_id, 150, "Visits")
        await session.commit()

    async with session_factory() as session:
        result = await _coordinator(session, InMemoryPayoutTransferClient(fail_with="Relay unavailable")).claim_milestone_payout(
            merchant_id,
            member_id,
        )

    assert result.ok
    assert result.value.refunded
    assert result.value.new_balance == 150
    assert result.value.payout.status == TransactionStatus.FAILED

    async with session_factory() as session:
        ledger = PointsLedger(session)
        refunds = (
            await session.execute(select(RewardTransaction).where(RewardTransaction.type == TransactionType.ADJUST))
        ).scalars().all()
        report = await ledger.recorder.reconcile(await ledger.get_membership(merchant_id, member_id))
    assert [(row.amount, row.reason) for row in refunds] == [(100, "Refund for failed payout")]
    assert report.is_consistent
    assert report.stored_points == 150


@pytest.mark.asyncio
async def test_milestone_claim_requires_points(session_factory) -> None:
    merchant_id, member_id, _ = await _usdc_setup(session_factory, points=60)
    client = InMemoryPayoutTransferClient()

    async with session_factory() as session:
        result = await _coordinator(session, client).claim_milestone_payout(merchant_id, member_id)

    assert result.error_code == "insufficient_points"
    assert client.requests == []
    assert await _payouts(session_factory) == []


@pytest.mark.asyncio
async def test_roll_budget_window_resets_once_per_period(session_factory) -> None:
    async with session_factory() as session:
        merchant = await seed_merchant(session)
        merchant.monthly_payout_budget = Decimal("100")
        merchant.payout_budget_reset_day = 1
        merchant.current_month_payouts = Decimal("40")
        merchant.last_budget_reset_at = datetime(2026, 2, 1, tzinfo=timezone.utc)
        await session.commit()

        coordinator = _coordinator(session, InMemoryPayoutTransferClient())
        now = datetime(2026, 3, 2, tzinfo=timezone.utc)
        assert await coordinator.roll_budget_window(merchant, now=now) is True
        assert await coordinator.roll_budget_window(merchant, now=now) is False
        await session.commit()

    assert Decimal(str(merchant.current_month_payouts)) == Decimal("0")


def _relay_request() -> TransferRequest:
    return TransferRequest(
        idempotency_key="8f0e2c1e-0000-4000-8000-000000000001",
        merchant_id="merchant-1",
        source_wallet=MERCHANT_WALLET,
        destination_wallet=MEMBER_WALLET,
        amount_usd=Decimal("5.00"),
        network="base-sepolia",
    )


@pytest.mark.asyncio
async def test_http_client_posts_transfer_to_relay() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"success": True, "txHash": "0xabc123"})

    client = HttpPayoutTransferClient(
        "https://relay.test/transfers",
        api_key="relay-secret",
        transport=httpx.MockTransport(handler),
    )
    result = await client.send_usdc(_relay_request())

    assert result.success
    assert result.tx_hash == "0xabc123"
    assert result.telemetry["statusCode"] == 200
    headers = captured["headers"]
    assert headers["Idempotency-Key"] == "8f0e2c1e-0000-4000-8000-000000000001"
    assert headers["Authorization"] == "Bearer relay-secret"
    assert captured["body"]["amountUsd"] == "5.00"
    assert captured["body"]["destinationWallet"] == MEMBER_WALLET


@pytest.mark.asyncio
async def test_http_client_reports_relay_failures() -> None:
    responses = iter(
        [
            httpx.Response(502, json={"error": "RPC node unavailable"}),
            httpx.Response(200, json={"success": True}),
            httpx.Response(200, text="not json"),
        ]
    )

    client = HttpPayoutTransferClient(
        "https://relay.test/transfers",
        transport=httpx.MockTransport(lambda request: next(responses)),
    )

    rpc_down = await client.send_usdc(_relay_request())
    missing_hash = await client.send_usdc(_relay_request())
    garbled = await client.send_usdc(_relay_request())

    assert not rpc_down.success
    assert rpc_down.error_message == "RPC node unavailable"
    assert not missing_hash.success
    assert missing_hash.error_message == "Relay reported success without a transaction hash"
    assert not garbled.success
    assert garbled.error_message == "Relay response was not valid JSON"


@pytest.mark.asyncio
async def test_http_client_handles_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = HttpPayoutTransferClient("https://relay.test/transfers", transport=httpx.MockTransport(handler))
    result = await client.send_usdc(_relay_request())

    assert not result.success
    assert result.error_message.startswith("Relay request failed")


class SlowTransferClient(InMemoryPayoutTransferClient):
    async def send_usdc(self, request: TransferRequest):
        await asyncio.sleep(0.1)
        return await super().send_usdc(request)


@pytest.mark.asyncio
async def test_concurrent_settles_transfer_and_reserve_budget_once(concurrent_session_factory) -> None:
    async with concurrent_session_factory() as session:
        merchant = await seed_merchant(
            session,
            payout_enabled=True,
            payout_wallet_address=MERCHANT_WALLET,
            monthly_payout_budget=Decimal("100.00"),
            payout_budget_reset_day=1,
        )
        member = await seed_member(session, merchant, points=200, wallet_address=MEMBER_WALLET)
        ledger = PointsLedger(session)
        membership = await ledger.get_membership(merchant.id, member.id)
        pending = await ledger.recorder.record(
            membership,
            transaction_type=TransactionType.PAYOUT,
            amount=0,
            reason="USDC payout: Five Dollars",
            usdc_amount=Decimal("5.00"),
            status=TransactionStatus.PENDING,
            wallet_address=MEMBER_WALLET,
        )
        await session.commit()
        merchant_id, pending_id = merchant.id, pending.id

    client = SlowTransferClient()

    async def settle():
        async with concurrent_session_factory() as session:
            return await _coordinator(session, client).settle(pending_id)

    outcomes = await asyncio.gather(settle(), settle())

    assert len(client.requests) == 1
    assert TransactionStatus.SUCCESS in {outcome.status for outcome in outcomes}
    assert (await _merchant(concurrent_session_factory, merchant_id)).current_month_payouts == Decimal("5.00")
    payouts = await _payouts(concurrent_session_factory)
    assert [payout.status for payout in payouts] == [TransactionStatus.SUCCESS]
    assert payouts[0].settle_started_at is not None
    assert get_redemption_store().snapshot().payouts == {"success": 1}


@pytest.mark.asyncio
async def test_concurrent_retries_open_one_payout(concurrent_session_factory) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(concurrent_session_factory)
    confirmed = await _redeem(
        concurrent_session_factory,
        InMemoryPayoutTransferClient(fail_with="Relay unavailable"),
        merchant_id,
        member_id,
        reward_id,
    )
    failed_id = confirmed.payout.transaction_id
    client = SlowTransferClient()

    async def retry():
        async with concurrent_session_factory() as session:
            return await _coordinator(session, client).retry_payout(failed_id, merchant_id)

    results = await asyncio.gather(retry(), retry())

    assert sorted(result.ok for result in results) == [False, True]
    assert [result.error_code for result in results if not result.ok] == ["invalid_state"]
    assert len(client.requests) == 1
    payouts = await _payouts(concurrent_session_factory)
    assert sorted(payout.status.value for payout in payouts) == ["FAILED", "SUCCESS"]


@pytest.mark.asyncio
async def test_second_live_payout_for_a_redemption_is_rejected(session_factory, monkeypatch) -> None:
    merchant_id, member_id, reward_id = await _usdc_setup(session_factory)
    client = InMemoryPayoutTransferClient(fail_with="Relay unavailable")
    confirmed = await _redeem(session_factory, client, merchant_id, member_id, reward_id)
    failed_id = confirmed.payout.transaction_id

    async with session_factory() as session:
        ledger = PointsLedger(session)
        membership = await ledger.get_membership(merchant_id, member_id)
        failed = await session.get(RewardTransaction, failed_id)
        await ledger.recorder.record(
            membership,
            transaction_type=TransactionType.PAYOUT,
            amount=0,
            reason="Manual payout",
            redemption_id=failed.redemption_id,
            usdc_amount=Decimal("5.00"),
            status=TransactionStatus.PENDING,
            wallet_address=MEMBER_WALLET,
        )
        await session.commit()

    # Simulates a retry that passed the live-payout check before the row above existed.
    async def no_live_payout(self, redemption_id):
        return None

    monkeypatch.setattr(PayoutCoordinator, "_ensure_no_live_payout", no_live_payout)
    async with session_factory() as session:
        result = await _coordinator(session, InMemoryPayoutTransferClient()).retry_payout(failed_id, merchant_id)

    assert result.error_code == "invalid_state"
    assert get_redemption_store().snapshot().failures == {"retry_payout:invalid_state": 1}
    assert len(await _payouts(session_factory)) == 2
