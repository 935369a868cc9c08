"""
Carrier call metrics

In-memory counters and latency histograms keyed by metric name + labels.
Every outbound carrier call increments carrier_requests_total{carrier=...};
the health monitor reads these alongside its own probe results.
"""
import logging
from collections import deque
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

CARRIER_REQUESTS = "carrier_requests_total"
CARRIER_ERRORS = "carrier_errors_total"
CARRIER_LATENCY = "carrier_request_duration_seconds"


class MetricsCollector:
    """
    In-memory metrics collector with rolling windows.

    Collects:
    - Counters (monotonically increasing values)
    - Histograms (distribution of values, e.g. latency)
    """

    def __init__(self):
        self._counters: Dict[str, int] = {}
        self._histograms: Dict[str, Deque[Tuple[datetime, float]]] = {}
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def increment(self, name: str, value: int = 1, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter metric."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Record a histogram observation (e.g., latency)."""
        key = self._make_key(name, labels)
        now = datetime.now(timezone.utc)
        with self._lock:
            if key not in self._histograms:
                self._histograms[key] = deque(maxlen=10000)
            self._histograms[key].append((now, value))

    def _make_key(self, name: str, labels: Optional[Dict[str, str]]) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def get_counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._make_key(name, labels)
        return self._counters.get(key, 0)

    def get_histogram_stats(self, name: str, labels: Optional[Dict[str, str]] = None,
                            window_seconds: int = 300) -> Dict:
        """Get histogram statistics for time window."""
        return self._histogram_stats(self._make_key(name, labels), window_seconds)

    def _histogram_stats(self, key: str, window_seconds: int) -> Dict:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)

        with self._lock:
            if key not in self._histograms:
                return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}
            values = [v for ts, v in self._histograms[key] if ts > cutoff]

        if not values:
            return {"count": 0, "avg": 0, "min": 0, "max": 0, "p95": 0}

        values.sort()
        p95_idx = int(len(values) * 0.95)

        return {
            "count": len(values),
            "avg": sum(values) / len(values),
            "min": values[0],
            "max": values[-1],
            "p95": values[p95_idx] if p95_idx < len(values) else values[-1],
        }

    def get_all_metrics(self, window_seconds: int = 300) -> Dict:
        """Get all metrics for export/display; histograms summarized over the window."""
        now = datetime.now(timezone.utc)
        with self._lock:
            counters = dict(self._counters)
            histogram_keys = list(self._histograms)
        return {
            "uptime_seconds": (now - self._start_time).total_seconds(),
            "counters": counters,
            "histograms": {key: self._histogram_stats(key, window_seconds) for key in histogram_keys},
            "collected_at": now.isoformat(),
        }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._histograms.clear()


# Global metrics collector
metrics = MetricsCollector()
