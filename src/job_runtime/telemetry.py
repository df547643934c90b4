"""
Telemetry for the job runtime.

Metrics live in a MetricRegistry keyed by name. JobMetrics layers the job
lifecycle counters and the execution duration histogram on top of it, and
DurationTracker keeps the per-type moving average used to estimate when a
running job will finish.

Synchronous work units run in a thread pool, so every metric guards its
state with a lock.
"""

from __future__ import annotations

import bisect
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

M = TypeVar("M")


@dataclass
class TelemetryConfig:
    """Switches and sizes for metric collection."""

    enabled: bool = True

    # Number of recent executions per job type in the duration average
    duration_window: int = 50

    # Histogram bucket boundaries (milliseconds)
    duration_buckets: tuple[float, ...] = (10, 50, 100, 500, 1_000, 5_000, 30_000, 120_000, 600_000)

    def __post_init__(self) -> None:
        if self.duration_window < 1:
            raise ValueError("duration_window must be >= 1")


class Counter:
    """Monotonic integer count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = 0

    def inc(self, amount: int = 1) -> None:
        with self._lock:
            self._total += amount

    @property
    def value(self) -> int:
        return self._total

    def reset(self) -> int:
        """Zero the counter; returns what it held."""
        with self._lock:
            held, self._total = self._total, 0
        return held


class Gauge:
    """Point-in-time value such as the number of running jobs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current = 0.0

    def set(self, value: float) -> None:
        with self._lock:
            self._current = float(value)

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._current += amount

    def dec(self, amount: float = 1.0) -> None:
        self.inc(-amount)

    @property
    def value(self) -> float:
        return self._current


class Histogram:
    """Bucketed distribution. The last bucket is unbounded."""

    def __init__(self, buckets: tuple[float, ...] = (10, 100, 1_000, 10_000)) -> None:
        self._lock = threading.Lock()
        self._bounds = [*sorted(buckets), float("inf")]
        self._hits = [0] * len(self._bounds)
        self._total = 0.0
        self._observations = 0

    def observe(self, value: float) -> None:
        slot = bisect.bisect_left(self._bounds, value)
        with self._lock:
            self._hits[slot] += 1
            self._total += value
            self._observations += 1

    @property
    def count(self) -> int:
        return self._observations

    @property
    def sum(self) -> float:
        return self._total

    @property
    def mean(self) -> float:
        if not self._observations:
            return 0.0
        return self._total / self._observations

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            buckets = {str(bound): hits for bound, hits in zip(self._bounds, self._hits)}
            return {
                "count": self._observations,
                "sum": self._total,
                "mean": self.mean,
                "buckets": buckets,
            }


class MetricRegistry:
    """Named counters, gauges and histograms, created on first use."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self.config = config or TelemetryConfig()
        self._lock = threading.Lock()
        self._families: dict[str, dict[str, Any]] = {
            "counters": {},
            "gauges": {},
            "histograms": {},
        }

    def _get(self, family: str, name: str, factory: Callable[[], M]) -> M:
        with self._lock:
            metrics = self._families[family]
            metric = metrics.get(name)
            if metric is None:
                metric = metrics[name] = factory()
            return metric

    def counter(self, name: str) -> Counter:
        return self._get("counters", name, Counter)

    def gauge(self, name: str) -> Gauge:
        return self._get("gauges", name, Gauge)

    def histogram(self, name: str, buckets: tuple[float, ...] | None = None) -> Histogram:
        return self._get(
            "histograms", name, lambda: Histogram(buckets or self.config.duration_buckets)
        )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            families = {family: dict(metrics) for family, metrics in self._families.items()}
        return {
            "counters": {name: c.value for name, c in families["counters"].items()},
            "gauges": {name: g.value for name, g in families["gauges"].items()},
            "histograms": {name: h.snapshot() for name, h in families["histograms"].items()},
        }

    def reset(self) -> dict[str, Any]:
        """Zero counters and gauges, returning the values they held.

        Histograms keep their distribution.
        """
        previous = self.snapshot()
        with self._lock:
            counters = list(self._families["counters"].values())
            gauges = list(self._families["gauges"].values())
        for counter in counters:
            counter.reset()
        for gauge in gauges:
            gauge.set(0.0)
        return previous


class JobMetrics:
    """Job lifecycle metrics on top of a MetricRegistry.

    Every event bumps a global counter (``jobs.<event>``) and a per-type one
    (``jobs.<event>.<type>``).
    """

    EVENTS = (
        "submitted",
        "deduplicated",
        "claimed",
        "claim_conflicts",
        "completed",
        "retried",
        "failed",
        "cancelled",
        "reclaimed",
        "swept",
        "discarded",
        "store_errors",
    )

    def __init__(self, registry: MetricRegistry | None = None) -> None:
        self.registry = registry or get_registry()

    def record(self, event: str, job_type: str | None = None, amount: int = 1) -> None:
        if event not in self.EVENTS:
            raise ValueError(f"unknown job metric event {event!r}")
        if not self.registry.config.enabled:
            return
        self.registry.counter(f"jobs.{event}").inc(amount)
        if job_type:
            self.registry.counter(f"jobs.{event}.{job_type}").inc(amount)

    def count(self, event: str, job_type: str | None = None) -> int:
        name = f"jobs.{event}.{job_type}" if job_type else f"jobs.{event}"
        return self.registry.counter(name).value

    def observe_duration(self, job_type: str, duration_ms: float) -> None:
        if not self.registry.config.enabled:
            return
        self.registry.histogram("jobs.execution.duration_ms").observe(duration_ms)
        self.registry.histogram(f"jobs.execution.duration_ms.{job_type}").observe(duration_ms)

    @property
    def running(self) -> Gauge:
        return self.registry.gauge("jobs.running")


class DurationTracker:
    """Moving average of successful execution time per job type."""

    def __init__(self, window: int = 50) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        self._window = window
        self._samples: dict[str, deque[float]] = {}
        self._lock = threading.Lock()

    def record(self, job_type: str, duration_s: float) -> None:
        with self._lock:
            samples = self._samples.get(job_type)
            if samples is None:
                samples = self._samples[job_type] = deque(maxlen=self._window)
            samples.append(max(0.0, duration_s))

    def average(self, job_type: str) -> float | None:
        """Average duration in seconds, or None without history."""
        with self._lock:
            samples = self._samples.get(job_type)
            if not samples:
                return None
            return sum(samples) / len(samples)

    def estimate_completion(self, job_type: str, started_at: float | None) -> float | None:
        if started_at is None:
            return None
        avg = self.average(job_type)
        return None if avg is None else started_at + avg


# Process-wide registry

_registry_holder: dict[str, MetricRegistry] = {}


def get_registry() -> MetricRegistry:
    """Registry used by components that were not handed one explicitly."""
    registry = _registry_holder.get("default")
    if registry is None:
        registry = _registry_holder.setdefault("default", MetricRegistry())
    return registry


def set_registry(registry: MetricRegistry) -> None:
    _registry_holder["default"] = registry


__all__ = [
    "TelemetryConfig",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricRegistry",
    "JobMetrics",
    "DurationTracker",
    "get_registry",
    "set_registry",
]
