"""In-process metrics for ReviewPulse workers.

Counters, gauges and histograms are kept in memory per process; the
durable record of pipeline health lives in the system_metrics table
written by the event sink.
"""

import threading
from typing import Any, Optional


class MetricsCollector:
    """Thread-safe in-memory metrics store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, float] = {}
        self._gauges: dict[str, float] = {}
        self._histograms: dict[str, list[float]] = {}

    @staticmethod
    def _make_key(name: str, labels: Optional[dict[str, str]] = None) -> str:
        if not labels:
            return name
        label_str = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        return f"{name}{{{label_str}}}"

    def increment(
        self,
        name: str,
        value: float = 1.0,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Add ``value`` to a counter."""
        key = self._make_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Overwrite a gauge value."""
        key = self._make_key(name, labels)
        with self._lock:
            self._gauges[key] = value

    def record_histogram(
        self,
        name: str,
        value: float,
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        """Append an observation to a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            self._histograms.setdefault(key, []).append(value)

    def get(self, name: str, labels: Optional[dict[str, str]] = None) -> float:
        """Current counter or gauge value, 0 when unknown."""
        key = self._make_key(name, labels)
        with self._lock:
            if key in self._counters:
                return self._counters[key]
            return self._gauges.get(key, 0)

    def get_histogram_stats(
        self,
        name: str,
        labels: Optional[dict[str, str]] = None,
    ) -> dict[str, float]:
        """Summary statistics (count, min, max, avg, p50, p95) of a histogram."""
        key = self._make_key(name, labels)
        with self._lock:
            values = list(self._histograms.get(key, []))

        if not values:
            return {"count": 0, "min": 0, "max": 0, "avg": 0}

        ordered = sorted(values)
        count = len(ordered)
        return {
            "count": count,
            "min": ordered[0],
            "max": ordered[-1],
            "avg": sum(ordered) / count,
            "p50": ordered[int(count * 0.5)],
            "p95": ordered[min(int(count * 0.95), count - 1)],
        }

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
                "histograms": {k: self.get_histogram_stats(k) for k in self._histograms},
            }

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()


class QueueMetrics:
    """Celery queue depth reader backed by the Redis broker."""

    QUEUE_NAMES = ["scraping", "analysis", "reports", "maintenance"]

    def __init__(self, redis_url: str):
        self._redis_url = redis_url
        self._redis_client = None

    def _get_redis(self):
        if self._redis_client is None:
            import redis

            self._redis_client = redis.from_url(self._redis_url)
        return self._redis_client

    def collect_queue_depths(self) -> dict[str, int]:
        """Return the pending message count of every pipeline queue.

        Raises:
            redis.RedisError: If the broker cannot be reached.
        """
        client = self._get_redis()
        return {name: int(client.llen(name)) for name in self.QUEUE_NAMES}


_collector = MetricsCollector()


def get_collector() -> MetricsCollector:
    """Get the process-global metrics collector."""
    return _collector
