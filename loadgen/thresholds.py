"""
SLA thresholds and the post-run verdict.

Thresholds use the same vocabulary as k6 scripts::

    http_req_duration: ["p(95)<500"]     # 95th percentile under 500 ms
    http_req_failed:   ["rate<0.01"]     # under 1 % failed requests

Each expression is ``<aggregation> <operator> <number>`` where the
aggregation is ``p(N)``, ``avg``, ``min``, ``max``, ``med``, ``rate`` or
``count`` and the operator is one of ``<``, ``<=``, ``>``, ``>=``,
``==``, ``!=``.  Comparisons are taken literally: ``p(95)<500`` fails
when the observed p95 is exactly 500 ms.

Thresholds are parsed when the scenario loads (bad expressions are a
:class:`~loadgen.errors.ConfigurationError`) and evaluated only once the
run window has closed, against the frozen
:class:`~loadgen.metrics.MetricsSummary`.  The result is a
:class:`~loadgen.models.Verdict` listing every threshold's observed and
target value, so a failing run says *why* it failed.
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from loadgen.errors import ConfigurationError
from loadgen.metrics import LatencyHistogram, MetricsSummary
from loadgen.models import Threshold, ThresholdResult, Verdict

logger = logging.getLogger(__name__)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

_TREND_AGGREGATIONS = frozenset({"p", "avg", "min", "max", "med"})

# Which aggregations each metric supports.
METRIC_AGGREGATIONS: dict[str, frozenset[str]] = {
    "http_req_duration": _TREND_AGGREGATIONS,
    "iteration_duration": _TREND_AGGREGATIONS,
    "http_req_failed": frozenset({"rate"}),
    "checks": frozenset({"rate"}),
    "http_reqs": frozenset({"count", "rate"}),
    "iterations": frozenset({"count", "rate"}),
    "dropped_iterations": frozenset({"count", "rate"}),
}

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|avg|min|max|med|rate|count)"
    r"\s*(?P<op><=|>=|==|!=|<|>)"
    r"\s*(?P<target>-?\d+(?:\.\d+)?)\s*$"
)


def parse_threshold(metric: str, expression: str) -> Threshold:
    """
    Parse one threshold expression for ``metric``.

    Raises:
        ConfigurationError: If the metric is unknown, the expression
            does not parse, or the aggregation does not apply to the
            metric.
    """
    if metric not in METRIC_AGGREGATIONS:
        raise ConfigurationError(
            f"Unknown threshold metric '{metric}'. "
            f"Expected one of: {sorted(METRIC_AGGREGATIONS)}"
        )
    if not isinstance(expression, str):
        raise ConfigurationError(f"Threshold for '{metric}' must be a string: {expression!r}")

    match = _EXPRESSION.match(expression)
    if match is None:
        raise ConfigurationError(f"Cannot parse threshold '{expression}' for '{metric}'")

    aggregation = match.group("agg")
    percentile = None
    if match.group("pct") is not None:
        aggregation = "p"
        percentile = float(match.group("pct"))
        if not 0 < percentile <= 100:
            raise ConfigurationError(f"Percentile out of range in '{expression}'")

    if aggregation not in METRIC_AGGREGATIONS[metric]:
        raise ConfigurationError(
            f"Aggregation '{aggregation}' is not valid for '{metric}' "
            f"(allowed: {sorted(METRIC_AGGREGATIONS[metric])})"
        )

    return Threshold(
        metric=metric,
        aggregation=aggregation,
        operator=match.group("op"),
        target=float(match.group("target")),
        expression=expression.strip(),
        percentile=percentile,
    )


def parse_thresholds(data: Mapping[str, Any] | None) -> tuple[Threshold, ...]:
    """
    Parse a ``{metric: [expression, ...]}`` mapping.

    A bare string is accepted in place of a one-element list.
    """
    if not data:
        return ()
    if not isinstance(data, Mapping):
        raise ConfigurationError("'thresholds' must map metric names to expressions")

    thresholds: list[Threshold] = []
    for metric, expressions in data.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        if not isinstance(expressions, list) or not expressions:
            raise ConfigurationError(f"Thresholds for '{metric}' must be a non-empty list")
        thresholds.extend(parse_threshold(metric, expression) for expression in expressions)
    return tuple(thresholds)


def _trend_value(histogram: LatencyHistogram, threshold: Threshold) -> float | None:
    if threshold.aggregation == "p":
        return histogram.percentile(threshold.percentile)
    if threshold.aggregation == "med":
        return histogram.percentile(50)
    if threshold.aggregation == "avg":
        return histogram.mean
    if threshold.aggregation == "min":
        return histogram.min
    return histogram.max


def _counter_value(count: int, summary: MetricsSummary, aggregation: str) -> float:
    if aggregation == "count":
        return float(count)
    if summary.duration <= 0:
        return 0.0
    return count / summary.duration


def observed_value(threshold: Threshold, summary: MetricsSummary) -> float | None:
    """
    Look up the value a threshold is compared against.

    Returns:
        The observed value, or ``None`` when the metric has no data
        (for example a latency percentile on a run with no samples).
    """
    metric = threshold.metric
    if metric == "http_req_duration":
        return _trend_value(summary.latency, threshold)
    if metric == "iteration_duration":
        return _trend_value(summary.iteration_duration, threshold)
    if metric == "http_req_failed":
        return summary.error_rate if summary.iterations else None
    if metric == "checks":
        return summary.checks_rate
    if metric in ("http_reqs", "iterations"):
        return _counter_value(summary.iterations, summary, threshold.aggregation)
    return _counter_value(summary.dropped_iterations, summary, threshold.aggregation)


def evaluate_threshold(threshold: Threshold, summary: MetricsSummary) -> ThresholdResult:
    observed = observed_value(threshold, summary)
    if observed is None:
        return ThresholdResult(
            metric=threshold.metric,
            expression=threshold.expression,
            observed=None,
            target=threshold.target,
            passed=False,
            note="no data recorded for this metric",
        )
    passed = OPERATORS[threshold.operator](observed, threshold.target)
    return ThresholdResult(
        metric=threshold.metric,
        expression=threshold.expression,
        observed=observed,
        target=threshold.target,
        passed=passed,
    )


def evaluate_thresholds(thresholds: Iterable[Threshold], summary: MetricsSummary) -> Verdict:
    """
    Evaluate every threshold against the final summary.

    A scenario passes only when all of its thresholds pass; a scenario
    with no thresholds always passes.
    """
    results = tuple(evaluate_threshold(threshold, summary) for threshold in thresholds)
    for result in results:
        logger.info(
            "Threshold %s %s: observed=%s -> %s",
            result.metric,
            result.expression,
            result.observed,
            "PASS" if result.passed else "FAIL",
        )
    return Verdict(passed=all(result.passed for result in results), results=results)
