import logging
import math
import time
from collections import Counter, deque
from typing import Any

from stressnet.constants import LATENCY_WINDOW, OutcomeKind
from stressnet.errors import RejectedError
from stressnet.models import TransactionOutcome

log = logging.getLogger("stressnet.stats")


def percentile(sorted_values: list[float], pct: float) -> float | None:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return None
    rank = max(1, min(len(sorted_values), math.ceil(pct / 100 * len(sorted_values))))
    return sorted_values[rank - 1]


class StatsAggregator:
    """Running counters over recorded outcomes. ``snapshot()`` is safe to call mid-run."""

    def __init__(self, latency_window: int = LATENCY_WINDOW) -> None:
        self.started_at = time.monotonic()
        self.by_kind: Counter[str] = Counter()
        self.by_layer: Counter[str] = Counter()
        self.by_reason: Counter[str] = Counter()
        self.by_account: Counter[str] = Counter()
        self._latencies: deque[float] = deque(maxlen=latency_window)
        self._lat_min: float | None = None
        self._lat_max: float | None = None
        self._lat_sum = 0.0
        self._lat_count = 0

    @property
    def total(self) -> int:
        return sum(self.by_kind.values())

    def record(self, outcome: TransactionOutcome, reason: str | None = None) -> None:
        self.by_kind[outcome.kind] += 1
        self.by_layer[outcome.layer] += 1
        self.by_account[outcome.account_id] += 1
        if reason:
            self.by_reason[reason] += 1
        if outcome.kind == OutcomeKind.CONFIRMED:
            lat = outcome.latency
            self._latencies.append(lat)
            self._lat_sum += lat
            self._lat_count += 1
            self._lat_min = lat if self._lat_min is None else min(self._lat_min, lat)
            self._lat_max = lat if self._lat_max is None else max(self._lat_max, lat)

    def record_error(self, outcome: TransactionOutcome, error: Exception) -> None:
        reason = error.reason.value if isinstance(error, RejectedError) else error.__class__.__name__
        self.record(outcome, reason)

    def latency(self) -> dict[str, float | None]:
        window = sorted(self._latencies)
        return {
            "min": self._lat_min,
            "avg": self._lat_sum / self._lat_count if self._lat_count else None,
            "max": self._lat_max,
            "p50": percentile(window, 50),
            "p90": percentile(window, 90),
            "p99": percentile(window, 99),
        }

    def snapshot(self) -> dict[str, Any]:
        elapsed = time.monotonic() - self.started_at
        total = self.total
        return {
            "total": total,
            "elapsed": round(elapsed, 3),
            "throughput": round(total / elapsed, 3) if elapsed > 0 else 0.0,
            "confirmed_per_second": round(self.by_kind[OutcomeKind.CONFIRMED] / elapsed, 3) if elapsed > 0 else 0.0,
            "by_kind": {k.value: self.by_kind[k] for k in OutcomeKind},
            "by_layer": dict(self.by_layer),
            "by_reason": dict(self.by_reason),
            "by_account": dict(self.by_account),
            "latency": self.latency(),
        }
