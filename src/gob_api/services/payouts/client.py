"""Transfer clients that move USDC from a merchant payout wallet to a member."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from time import perf_counter
from typing import Any, Protocol

import httpx
from loguru import logger

from gob_api.core.settings import settings


@dataclass(slots=True)
class TransferRequest:
    idempotency_key: str
    merchant_id: str
    source_wallet: str | None
    destination_wallet: str
    amount_usd: Decimal
    network: str


@dataclass(slots=True)
class TransferResult:
    success: bool
    tx_hash: str | None = None
    error_message: str | None = None
    telemetry: dict[str, Any] = field(default_factory=dict)


class PayoutTransferClient(Protocol):
    async def send_usdc(self, request: TransferRequest) -> TransferResult: ...


class UnconfiguredTransferClient:
    """Fallback used when no settlement relay is configured; every transfer fails."""

    async def send_usdc(self, request: TransferRequest) -> TransferResult:
        return TransferResult(success=False, error_message="Payout relay is not configured")


class HttpPayoutTransferClient:
    """Forwards transfer requests to the settlement relay over HTTP."""

    def __init__(
        self,
        endpoint_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint_url = endpoint_url
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    async def send_usdc(self, request: TransferRequest) -> TransferResult:
        payload = {
            "idempotencyKey": request.idempotency_key,
            "merchantId": request.merchant_id,
            "sourceWallet": request.source_wallet,
            "destinationWallet": request.destination_wallet,
            "amountUsd": str(request.amount_usd),
            "network": request.network,
        }
        headers = {"Content-Type": "application/json", "Idempotency-Key": request.idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        start = perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(self._endpoint_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            latency_ms = int((perf_counter() - start) * 1000)
            logger.warning(
                "Payout relay request failed",
                idempotency_key=request.idempotency_key,
                destination_wallet=request.destination_wallet,
                error=str(exc),
            )
            return TransferResult(
                success=False,
                error_message=f"Relay request failed: {exc}",
                telemetry={"latencyMs": latency_ms},
            )

        latency_ms = int((perf_counter() - start) * 1000)
        telemetry: dict[str, Any] = {"latencyMs": latency_ms, "statusCode": response.status_code}
        try:
            body = response.json()
        except ValueError:
            return TransferResult(
                success=False,
                error_message="Relay response was not valid JSON",
                telemetry=telemetry,
            )
        if not isinstance(body, dict):
            body = {}

        tx_hash = body.get("txHash")
        success = bool(body.get("success")) if "success" in body else response.is_success
        if success and not tx_hash:
            return TransferResult(
                success=False,
                error_message="Relay reported success without a transaction hash",
                telemetry=telemetry,
            )
        if not success:
            error_message = body.get("error") or f"Relay returned HTTP {response.status_code}"
            return TransferResult(success=False, error_message=str(error_message), telemetry=telemetry)
        return TransferResult(success=True, tx_hash=str(tx_hash), telemetry=telemetry)


class InMemoryPayoutTransferClient:
    """Test double recording transfer requests with scripted outcomes."""

    def __init__(self, *, fail_with: str | None = None, raise_error: Exception | None = None) -> None:
        self.requests: list[TransferRequest] = []
        self.fail_with = fail_with
        self.raise_error = raise_error

    async def send_usdc(self, request: TransferRequest) -> TransferResult:
        self.requests.append(request)
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with:
            return TransferResult(success=False, error_message=self.fail_with)
        return TransferResult(success=True, tx_hash=f"0x{request.idempotency_key.replace('-', '')[:64]:0<64}")


_DEFAULT_CLIENT: PayoutTransferClient | None = None


def get_transfer_client() -> PayoutTransferClient:
    global _DEFAULT_CLIENT
    if _DEFAULT_CLIENT is not None:
        return _DEFAULT_CLIENT
    if settings.payout_relay_url:
        _DEFAULT_CLIENT = HttpPayoutTransferClient(
            settings.payout_relay_url,
            api_key=settings.payout_relay_api_key,
            timeout_seconds=settings.payout_relay_timeout_seconds,
        )
    else:
        logger.warning("Payout relay URL not configured; USDC payouts will fail until it is set")
        _DEFAULT_CLIENT = UnconfiguredTransferClient()
    return _DEFAULT_CLIENT


__all__ = [
    "HttpPayoutTransferClient",
    "InMemoryPayoutTransferClient",
    "PayoutTransferClient",
    "TransferRequest",
    "TransferResult",
    "UnconfiguredTransferClient",
    "get_transfer_client",
]
