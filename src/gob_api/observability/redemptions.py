from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from threading import Lock
from typing import Dict


@dataclass
class RedemptionSnapshot:
    transitions: Dict[str, int]
    failures: Dict[str, int]
    payouts: Dict[str, int]
    payout_volume_usd: str

    def as_dict(self) -> Dict[str, object]:
        return {
            "transitions": dict(self.transitions),
            "failures": dict(self.failures),
            "payouts": dict(self.payouts),
            "payout_volume_usd": self.payout_volume_usd,
        }


class RedemptionObservabilityStore:
    """Counts redemption transitions, rejected operations, and payout outcomes."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._transitions: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, int] = defaultdict(int)
        self._payouts: Dict[str, int] = defaultdict(int)
        self._payout_volume = Decimal("0")

    def record_transition(self, status: str) -> None:
        with self._lock:
            self._transitions[status.lower()] += 1

    def record_failure(self, operation: str, code: str) -> None:
        with self._lock:
            self._failures[f"{operation}:{code}"] += 1

    def record_payout(self, outcome: str, amount_usd: Decimal | None = None) -> None:
        with self._lock:
            self._payouts[outcome.lower()] += 1
            if outcome.lower() == "success" and amount_usd is not None:
                self._payout_volume += Decimal(str(amount_usd))

    def snapshot(self) -> RedemptionSnapshot:
        with self._lock:
            return RedemptionSnapshot(
                transitions=dict(self._transitions),
                failures=dict(self._failures),
                payouts=dict(self._payouts),
                payout_volume_usd=str(self._payout_volume.quantize(Decimal("0.01"))),
            )

    def reset(self) -> None:
        with self._lock:
            self._transitions.clear()
            self._failures.clear()
            self._payouts.clear()
            self._payout_volume = Decimal("0")


_STORE = RedemptionObservabilityStore()


def get_redemption_store() -> RedemptionObservabilityStore:
    return _STORE


__all__ = ["RedemptionObservabilityStore", "RedemptionSnapshot", "get_redemption_store"]
