"""
Data model for the load-generation engine.

Scenario-side types (:class:`Scenario`, :class:`Stage`,
:class:`PayloadTemplate`, :class:`Threshold`) are frozen dataclasses:
they are built and validated once by :mod:`loadgen.loader` and never
change while a run is in progress.  Run-side types
(:class:`Iteration`, :class:`MetricSample`, :class:`Verdict`) describe
what happened during a run.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ArrivalModel(str, Enum):
    """How a scenario decides when iterations start."""

    CONSTANT_VUS = "constant-vus"
    RAMPING_VUS = "ramping-vus"
    RAMPING_ARRIVAL_RATE = "ramping-arrival-rate"


class TemplateKind(str, Enum):
    """Supported request-body template kinds."""

    FIXED = "fixed"
    RANDOMIZED = "randomized"
    BULK = "bulk"


# =====================================================================
# Scenario configuration
# =====================================================================


@dataclass(frozen=True)
class Stage:
    """One ramp segment: approach ``target`` linearly over ``duration`` seconds."""

    target: float
    duration: float


@dataclass(frozen=True)
class RequestTarget:
    """The endpoint every iteration hits."""

    url: str
    method: str = "POST"
    headers: dict[str, str] = field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )


@dataclass(frozen=True)
class PayloadTemplate:
    """
    Description of how request bodies are built.

    Attributes:
        kind: Which generator to use.
        fields: Field name to value (fixed / bulk base fields) or field
            name to generator spec (randomized).
        pad_field: Name of the field filled to ``size_bytes`` (bulk only).
        size_bytes: Byte size of the padded field (bulk only).
        fill: Character repeated to build the padded field.
    """

    kind: TemplateKind = TemplateKind.FIXED
    fields: dict[str, Any] = field(default_factory=dict)
    pad_field: str | None = None
    size_bytes: int | None = None
    fill: str = "X"


@dataclass(frozen=True)
class Check:
    """A named boolean assertion against a response."""

    name: str
    predicate: Callable[[HttpResult], bool]


@dataclass(frozen=True)
class Threshold:
    """
    An SLA condition evaluated against aggregated run metrics.

    ``aggregation`` is one of ``p``, ``avg``, ``min``, ``max``, ``med``,
    ``rate`` or ``count``; ``percentile`` is only set for ``p``.
    """

    metric: str
    aggregation: str
    operator: str
    target: float
    expression: str
    percentile: float | None = None


@dataclass(frozen=True)
class Scenario:
    """
    A complete, validated load-test scenario.

    Only the fields relevant to ``executor`` are consulted; the loader
    rejects fields that do not belong to the chosen arrival model.
    """

    name: str
    executor: ArrivalModel
    target: RequestTarget
    payload: PayloadTemplate = field(default_factory=PayloadTemplate)
    checks: tuple[Check, ...] = ()
    thresholds: tuple[Threshold, ...] = ()

    # constant-vus
    vus: int = 1
    duration: float = 0.0
    iterations: int | None = None

    # ramping-vus / ramping-arrival-rate
    stages: tuple[Stage, ...] = ()
    start_vus: int = 0
    start_rate: float = 0.0
    time_unit: float = 1.0
    pre_allocated_vus: int = 1
    max_vus: int = 1

    # common
    think_time: float = 0.0
    think_time_in_latency: bool = False
    graceful_stop: float = 30.0
    request_timeout: float = 60.0
    expected_statuses: tuple[int, ...] = tuple(range(200, 400))
    seed: int = 0

    @property
    def total_duration(self) -> float:
        """Length of the scheduling window in seconds."""
        if self.executor is ArrivalModel.CONSTANT_VUS:
            return self.duration
        return sum(stage.duration for stage in self.stages)

    @property
    def max_concurrency(self) -> int:
        """Upper bound on simultaneously running iterations."""
        if self.executor is ArrivalModel.CONSTANT_VUS:
            return self.vus
        return self.max_vus


# =====================================================================
# Run-time records
# =====================================================================


@dataclass
class HttpResult:
    """
    What the executor captured for one request.

    ``status`` is ``0`` when a transport error prevented any HTTP
    response; ``error`` then describes the failure.
    """

    status: int
    latency_ms: float
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    def json(self) -> Any:
        """Decode the body as JSON (raises ``ValueError`` on bad JSON)."""
        return json.loads(self.body.decode("utf-8"))


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one check against one response."""

    name: str
    passed: bool
    error: str | None = None


@dataclass
class Iteration:
    """One logical execution of the scenario by one virtual user."""

    vu_id: int
    index: int
    payload: dict[str, Any] | None = None
    result: HttpResult | None = None
    checks: list[CheckResult] = field(default_factory=list)


@dataclass(frozen=True)
class MetricSample:
    """One iteration's contribution to the aggregated metrics."""

    timestamp: float
    latency_ms: float
    status: int
    error: bool
    iteration_ms: float = 0.0


@dataclass(frozen=True)
class ThresholdResult:
    """Per-threshold verdict entry with observed and target values."""

    metric: str
    expression: str
    observed: float | None
    target: float
    passed: bool
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "metric": self.metric,
            "expression": self.expression,
            "observed": self.observed,
            "target": self.target,
            "passed": self.passed,
            "note": self.note,
        }


@dataclass(frozen=True)
class Verdict:
    """Overall pass/fail for a scenario plus the per-threshold breakdown."""

    passed: bool
    results: tuple[ThresholdResult, ...] = ()

    @property
    def failures(self) -> list[ThresholdResult]:
        return [result for result in self.results if not result.passed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "thresholds": [result.to_dict() for result in self.results],
        }
