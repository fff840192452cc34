"""
Billing Metrics — In-memory counters for reconciliation outcomes.

Exposed on the HTTP surface and in the batch summary log line.
In-memory only — resets on restart; the event log is the durable record.
"""
from __future__ import annotations

from collections import defaultdict
from threading import Lock
from typing import Any, Dict, Optional


class BillingMetrics:
    """Thread-safe in-memory counters."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)  # by error code
        self._last_run: Dict[str, Any] = {}

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] += amount

    def record_error(self, error_code: str) -> None:
        with self._lock:
            self._errors[error_code] += 1

    def record_run(self, summary: Dict[str, Any]) -> None:
        with self._lock:
            self._counters["batch_runs"] += 1
            self._last_run = dict(summary)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_snapshot(self) -> Dict[str, Any]:
        """Return a point-in-time snapshot of all metrics."""
        with self._lock:
            return {
                "counters": dict(self._counters),
                "errors": dict(self._errors),
                "last_run": dict(self._last_run),
            }


# Singleton
_metrics: Optional[BillingMetrics] = None


def get_billing_metrics() -> BillingMetrics:
    global _metrics
    if _metrics is None:
        _metrics = BillingMetrics()
    return _metrics
