"""
Run metrics aggregation.

Every completed iteration appends one :class:`~loadgen.models.MetricSample`
(and its check outcomes) to a :class:`MetricsAggregator`.  Appends come
from many worker threads at once, so each one takes a lock; appending is
the only mutation while the run is live.  Once scheduling stops and the
grace period ends, :meth:`MetricsAggregator.freeze` closes the append
phase and :meth:`MetricsAggregator.summary` produces the read-only
:class:`MetricsSummary` that thresholds are evaluated against.

Latencies go into a :class:`LatencyHistogram`: values keep millisecond
precision below one second and three significant digits above it, and
are counted per bucket, so memory stays bounded on long runs no matter
how many samples arrive.  Every statistic kept here
(counts, integer-microsecond sums, min, max, bucket counts) is
commutative and associative; sample order and the merging of partial
aggregators never change the summary.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from loadgen.errors import AggregatorFrozen
from loadgen.models import CheckResult, MetricSample

logger = logging.getLogger(__name__)

SUMMARY_PERCENTILES = (50, 90, 95, 99)


def round_latency(value_ms: float) -> int:
    """
    Round a latency to its histogram bucket.

    Below one second values keep millisecond precision; above that they
    keep three significant digits (e.g. 3432 → 3430, 12345 → 12300).
    Halves round up, so neighbouring buckets never depend on parity.
    """
    if value_ms < 1000:
        unit = 1
    elif value_ms < 10000:
        unit = 10
    else:
        unit = 100
    return int(math.floor(value_ms / unit + 0.5)) * unit


class LatencyHistogram:
    """Bounded-memory distribution of millisecond durations."""

    def __init__(self) -> None:
        self.buckets: dict[int, int] = {}
        self.count = 0
        self.total_us = 0
        self.min: float | None = None
        self.max: float | None = None

    def add(self, value_ms: float) -> None:
        bucket = round_latency(value_ms)
        self.buckets[bucket] = self.buckets.get(bucket, 0) + 1
        self.count += 1
        self.total_us += int(round(value_ms * 1000))
        self.min = value_ms if self.min is None else min(self.min, value_ms)
        self.max = value_ms if self.max is None else max(self.max, value_ms)

    def merge(self, other: LatencyHistogram) -> None:
        for bucket, count in other.buckets.items():
            self.buckets[bucket] = self.buckets.get(bucket, 0) + count
        self.count += other.count
        self.total_us += other.total_us
        if other.min is not None:
            self.min = other.min if self.min is None else min(self.min, other.min)
        if other.max is not None:
            self.max = other.max if self.max is None else max(self.max, other.max)

    def copy(self) -> LatencyHistogram:
        clone = LatencyHistogram()
        clone.merge(self)
        return clone

    @property
    def mean(self) -> float | None:
        if not self.count:
            return None
        return self.total_us / self.count / 1000.0

    def percentile(self, percent: float) -> float | None:
        """
        Nearest-rank percentile over the bucketed values.

        The result is clamped to the exact observed min/max so that a
        single-valued distribution reports that value exactly.

        Returns:
            The percentile in milliseconds, or ``None`` with no samples.
        """
        if not self.count:
            return None
        rank = max(1, math.ceil(percent / 100.0 * self.count))
        seen = 0
        value = 0.0
        for bucket in sorted(self.buckets):
            seen += self.buckets[bucket]
            if seen >= rank:
                value = float(bucket)
                break
        return min(max(value, self.min), self.max)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LatencyHistogram):
            return NotImplemented
        return (
            self.buckets == other.buckets
            and self.count == other.count
            and self.total_us == other.total_us
            and self.min == other.min
            and self.max == other.max
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "count": self.count,
            "min": self.min,
            "max": self.max,
            "avg": self.mean,
            "med": self.percentile(50),
        }
        for percent in SUMMARY_PERCENTILES:
            data[f"p({percent})"] = self.percentile(percent)
        return data


@dataclass
class CheckTally:
    passes: int = 0
    fails: int = 0

    @property
    def total(self) -> int:
        return self.passes + self.fails


@dataclass(frozen=True)
class MetricsSummary:
    """
    Read-only view of a finished run's metrics.

    ``duration`` is the scheduling window in seconds and is used for
    per-second rates.
    """

    iterations: int
    failed_requests: int
    dropped_iterations: int
    interrupted_iterations: int
    duration: float
    latency: LatencyHistogram
    iteration_duration: LatencyHistogram
    checks: dict[str, CheckTally] = field(default_factory=dict)
    status_counts: dict[int, int] = field(default_factory=dict)

    @property
    def http_reqs(self) -> int:
        return self.iterations

    @property
    def error_rate(self) -> float:
        if not self.iterations:
            return 0.0
        return self.failed_requests / self.iterations

    @property
    def check_passes(self) -> int:
        return sum(tally.passes for tally in self.checks.values())

    @property
    def check_total(self) -> int:
        return sum(tally.total for tally in self.checks.values())

    @property
    def checks_rate(self) -> float | None:
        total = self.check_total
        if not total:
            return None
        return self.check_passes / total

    @property
    def request_rate(self) -> float:
        if self.duration <= 0:
            return 0.0
        return self.iterations / self.duration

    def to_dict(self) -> dict[str, Any]:
        return {
            "iterations": self.iterations,
            "http_reqs": self.http_reqs,
            "http_req_failed": self.error_rate,
            "failed_requests": self.failed_requests,
            "dropped_iterations": self.dropped_iterations,
            "interrupted_iterations": self.interrupted_iterations,
            "duration": self.duration,
            "http_req_duration": self.latency.to_dict(),
            "iteration_duration": self.iteration_duration.to_dict(),
            "checks": {
                name: {"passes": tally.passes, "fails": tally.fails}
                for name, tally in self.checks.items()
            },
            "status_counts": dict(self.status_counts),
        }


class MetricsAggregator:
    """Thread-safe, append-only collector of iteration metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frozen = False
        self.iterations = 0
        self.failed_requests = 0
        self.dropped_iterations = 0
        self.interrupted_iterations = 0
        self.latency = LatencyHistogram()
        self.iteration_duration = LatencyHistogram()
        self.checks: dict[str, CheckTally] = {}
        self.status_counts: dict[int, int] = {}

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add_sample(self, sample: MetricSample, checks: Iterable[CheckResult] = ()) -> None:
        """
        Fold one iteration into the running totals.

        Raises:
            AggregatorFrozen: If the aggregator no longer accepts samples.
        """
        check_results = list(checks)
        with self._lock:
            if self._frozen:
                raise AggregatorFrozen("sample arrived after the run window closed")
            self.iterations += 1
            if sample.error:
                self.failed_requests += 1
            self.status_counts[sample.status] = self.status_counts.get(sample.status, 0) + 1
            self.latency.add(sample.latency_ms)
            self.iteration_duration.add(sample.iteration_ms)
            for result in check_results:
                tally = self.checks.setdefault(result.name, CheckTally())
                if result.passed:
                    tally.passes += 1
                else:
                    tally.fails += 1

    def record_dropped_iteration(self) -> None:
        with self._lock:
            if not self._frozen:
                self.dropped_iterations += 1

    def record_interrupted(self, count: int) -> None:
        with self._lock:
            self.interrupted_iterations += count

    def merge(self, other: MetricsAggregator) -> None:
        """Add another aggregator's totals into this one."""
        with self._lock, other._lock:
            if self._frozen:
                raise AggregatorFrozen("cannot merge into a frozen aggregator")
            self.iterations += other.iterations
            self.failed_requests += other.failed_requests
            self.dropped_iterations += other.dropped_iterations
            self.interrupted_iterations += other.interrupted_iterations
            self.latency.merge(other.latency)
            self.iteration_duration.merge(other.iteration_duration)
            for name, tally in other.checks.items():
                mine = self.checks.setdefault(name, CheckTally())
                mine.passes += tally.passes
                mine.fails += tally.fails
            for status, count in other.status_counts.items():
                self.status_counts[status] = self.status_counts.get(status, 0) + count

    def freeze(self) -> None:
        with self._lock:
            if not self._frozen:
                logger.debug("Aggregator frozen after %d iteration(s)", self.iterations)
            self._frozen = True

    def summary(self, duration: float = 0.0) -> MetricsSummary:
        """Return an immutable snapshot of the current totals."""
        with self._lock:
            return MetricsSummary(
                iterations=self.iterations,
                failed_requests=self.failed_requests,
                dropped_iterations=self.dropped_iterations,
                interrupted_iterations=self.interrupted_iterations,
                duration=duration,
                latency=self.latency.copy(),
                iteration_duration=self.iteration_duration.copy(),
                checks={
                    name: CheckTally(tally.passes, tally.fails)
                    for name, tally in self.checks.items()
                },
                status_counts=dict(self.status_counts),
            )
