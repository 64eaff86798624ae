from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    reconciliations: Dict[str, int]
    cancellations: Dict[str, int]
    tier_changes: Dict[str, int]
    push_deliveries: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "reconciliations": dict(self.reconciliations),
            "cancellations": dict(self.cancellations),
            "tierChanges": dict(self.tier_changes),
            "pushDeliveries": dict(self.push_deliveries),
        }


class LoyaltyObservabilityStore:
    """Collect ledger, cancellation, and push telemetry for dashboards."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._reconciliations: Dict[str, int] = defaultdict(int)
        self._cancellations: Dict[str, int] = defaultdict(int)
        self._tier_changes: Dict[str, int] = defaultdict(int)
        self._push: Dict[str, int] = defaultdict(int)

    def record_reconciliation(self, status: str, *, corrections: int = 0) -> None:
        with self._lock:
            self._reconciliations[status.lower()] += 1
            self._reconciliations["snapshot_corrections"] += corrections

    def record_cancellation(self, outcome: str) -> None:
        with self._lock:
            self._cancellations[outcome] += 1

    def record_tier_change(self, direction: str) -> None:
        with self._lock:
            self._tier_changes[direction] += 1

    def record_push_delivery(self, *, succeeded: int, failed: int) -> None:
        with self._lock:
            self._push["succeeded"] += succeeded
            self._push["failed"] += failed

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                reconciliations=dict(self._reconciliations),
                cancellations=dict(self._cancellations),
                tier_changes=dict(self._tier_changes),
                push_deliveries=dict(self._push),
            )

    def reset(self) -> None:
        with self._lock:
            self._reconciliations.clear()
            self._cancellations.clear()
            self._tier_changes.clear()
            self._push.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
