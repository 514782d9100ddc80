"""
Metrics collection for ShieldRoute.

Thread-safe counters, gauges and histograms with optional labels, exported
as JSON or in Prometheus text format (every name prefixed with
``shieldroute_``).

Lifecycle metrics recorded elsewhere:
- events_total{kind}: every emitted lifecycle event
- refund_amount_total: value returned to request owners
- refunds_claimable: requests whose owners could claim a refund (sweeper)
- http_requests_total / http_request_duration_ms: request middleware
"""

import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

PREFIX = "shieldroute_"

# Latency buckets in milliseconds
DEFAULT_BOUNDS = (5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000)


@dataclass
class HistogramBucket:
    le: float
    count: int = 0


@dataclass
class Histogram:
    """Cumulative-bucket histogram."""

    name: str
    buckets: list[HistogramBucket] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self):
        if not self.buckets:
            self.buckets = [HistogramBucket(le=b) for b in DEFAULT_BOUNDS]
            self.buckets.append(HistogramBucket(le=float("inf")))

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for bucket in self.buckets:
            if value <= bucket.le:
                bucket.count += 1


def _labels_key(labels: dict[str, str] | None) -> str:
    """Labels as a sorted Prometheus label string (hashable)."""
    if not labels:
        return ""
    return ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))


def _flatten(values: dict[str, float]) -> Any:
    """A lone unlabeled series exports as a bare number."""
    if len(values) == 1 and "" in values:
        return values[""]
    return dict(values)


class MetricsCollector:
    """
    Thread-safe metrics collector.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._counters: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._gauges: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
        self._histograms: dict[str, dict[str, Histogram]] = defaultdict(dict)
        self._start_time = time.time()

        self.increment("app_start_total")

    # Counters

    def increment(self, name: str, value: int = 1, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._counters[name][_labels_key(labels)] += value

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        with self._lock:
            return self._counters[name].get(_labels_key(labels), 0)

    # Gauges

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] = value

    def increment_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] += value

    def decrement_gauge(
        self, name: str, value: float = 1.0, labels: dict[str, str] | None = None
    ) -> None:
        with self._lock:
            self._gauges[name][_labels_key(labels)] -= value

    def get_gauge(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._gauges[name].get(_labels_key(labels), 0.0)

    # Histograms

    def timing(self, name: str, value_ms: float, labels: dict[str, str] | None = None) -> None:
        """Record a duration in milliseconds."""
        with self._lock:
            key = _labels_key(labels)
            if key not in self._histograms[name]:
                self._histograms[name][key] = Histogram(name=name)
            self._histograms[name][key].observe(value_ms)

    @contextmanager
    def timer(self, name: str, labels: dict[str, str] | None = None):
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timing(name, (time.perf_counter() - start) * 1000, labels)

    # Export

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            return {
                "uptime_seconds": time.time() - self._start_time,
                "counters": {name: _flatten(v) for name, v in self._counters.items()},
                "gauges": {name: _flatten(v) for name, v in self._gauges.items()},
                "histograms": {
                    name: {
                        key or "_total": {
                            "count": hist.count,
                            "sum": hist.sum,
                            "avg": hist.sum / hist.count if hist.count else 0,
                            "buckets": {str(b.le): b.count for b in hist.buckets},
                        }
                        for key, hist in series.items()
                    }
                    for name, series in self._histograms.items()
                },
            }

    def to_prometheus(self) -> str:
        """Prometheus text exposition format."""
        lines = [
            f"# HELP {PREFIX}uptime_seconds Time since application start",
            f"# TYPE {PREFIX}uptime_seconds gauge",
            f"{PREFIX}uptime_seconds {time.time() - self._start_time:.2f}",
            "",
        ]

        with self._lock:
            for kind, store in (("counter", self._counters), ("gauge", self._gauges)):
                for name, values in store.items():
                    metric = f"{PREFIX}{name}"
                    lines.append(f"# TYPE {metric} {kind}")
                    for key, value in values.items():
                        lines.append(f"{metric}{{{key}}} {value}" if key else f"{metric} {value}")
                    lines.append("")

            for name, series in self._histograms.items():
                metric = f"{PREFIX}{name}"
                lines.append(f"# TYPE {metric} histogram")
                for key, hist in series.items():
                    label_head = f"{key}," if key else ""
                    suffix = f"{{{key}}}" if key else ""
                    for bucket in hist.buckets:
                        le_val = "+Inf" if bucket.le == float("inf") else bucket.le
                        lines.append(f'{metric}_bucket{{{label_head}le="{le_val}"}} {bucket.count}')
                    lines.append(f"{metric}_sum{suffix} {hist.sum:.2f}")
                    lines.append(f"{metric}_count{suffix} {hist.count}")
                lines.append("")

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics (for tests)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()
            self._start_time = time.time()


# Global metrics instance
metrics = MetricsCollector()
