"""
Run lifecycle.

A :class:`Run` owns everything one execution of a scenario needs: its
own monotonic clock, the stop signal shared by every worker, the request
executor, the payload generator and the metrics aggregator.  Nothing is
process-global, so several runs can execute side by side.

Lifecycle::

    run = Run(scenario)
    report = run.execute()       # blocks for the scheduling window
    report.verdict.passed

1. The scheduler triggers iterations until the window closes or
   :meth:`Run.abort` is called.
2. Scheduling stops; in-flight iterations get ``graceful_stop`` seconds
   to finish.
3. The aggregator is frozen.  Iterations still running at that point
   are counted as interrupted and their late results are discarded.
4. Thresholds are evaluated against the frozen summary.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from loadgen.checks import evaluate_checks
from loadgen.config import Config, get_config
from loadgen.errors import AggregatorFrozen, ConfigurationError
from loadgen.executor import TRANSPORT_ERROR_STATUS, RequestExecutor, new_session
from loadgen.metrics import MetricsAggregator, MetricsSummary
from loadgen.models import HttpResult, Iteration, MetricSample, Scenario, Verdict
from loadgen.payloads import build_payload_generator
from loadgen.scheduler import build_scheduler
from loadgen.thresholds import evaluate_thresholds

logger = logging.getLogger(__name__)

SessionFactory = Callable[[int], requests.Session]


@dataclass(frozen=True)
class RunReport:
    """Everything a finished run hands to its caller."""

    scenario: str
    started_at: str
    duration: float
    aborted: bool
    peak_concurrency: int
    summary: MetricsSummary
    verdict: Verdict

    @property
    def passed(self) -> bool:
        return self.verdict.passed

    def to_dict(self) -> dict[str, Any]:
        return {
            "scenario": self.scenario,
            "started_at": self.started_at,
            "duration": self.duration,
            "aborted": self.aborted,
            "peak_concurrency": self.peak_concurrency,
            "metrics": self.summary.to_dict(),
            "verdict": self.verdict.to_dict(),
        }


class Run:
    """
    One execution of a :class:`~loadgen.models.Scenario`.

    Args:
        scenario: The validated scenario to execute.
        config: Engine configuration class; defaults to ``get_config()``.
        session_factory: Builds the HTTP session each virtual user uses.
            Tests inject fakes here.

    Raises:
        ConfigurationError: If the payload template is malformed.  The
            run never starts in that case.
    """

    def __init__(
        self,
        scenario: Scenario,
        config: type[Config] | None = None,
        session_factory: SessionFactory = new_session,
    ):
        self.scenario = scenario
        self.config = config or get_config()
        self._session_factory = session_factory

        self.stop_event = threading.Event()
        self.aggregator = MetricsAggregator()
        self.executor = RequestExecutor(
            scenario.target,
            timeout=scenario.request_timeout,
            expected_statuses=scenario.expected_statuses,
        )
        self.payloads = build_payload_generator(scenario.payload, seed=scenario.seed)

        self._started: float | None = None
        self._lock = threading.Lock()
        self._in_flight = 0
        self.peak_concurrency = 0
        self._executed = False
        self._iteration_errors = 0

    # ---- clock and signals -----------------------------------------

    def elapsed(self) -> float:
        """Seconds since the run started (0 before it starts)."""
        if self._started is None:
            return 0.0
        return time.monotonic() - self._started

    def abort(self) -> None:
        """Stop scheduling new iterations as soon as possible."""
        if not self.stop_event.is_set():
            logger.info("Run '%s' aborted at %.2fs", self.scenario.name, self.elapsed())
        self.stop_event.set()

    def new_session(self) -> requests.Session:
        return self._session_factory(1)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    # ---- iterations -------------------------------------------------

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1
            self.peak_concurrency = max(self.peak_concurrency, self._in_flight)

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def run_iteration(self, vu_id: int, index: int, session: requests.Session) -> Iteration:
        """
        Execute one iteration and fold it into the metrics.

        Builds the payload, sends the request, runs the checks, applies
        think time and appends exactly one sample.  Request and check
        failures are recorded, never raised.  Any other error inside the
        iteration is recorded as a status ``0`` sample so the worker
        thread keeps serving iterations.
        """
        self._enter()
        finished = False
        iteration_started = time.perf_counter()
        iteration = Iteration(vu_id=vu_id, index=index)
        try:
            try:
                sample = self._perform(iteration, session, iteration_started)
            except Exception as exc:
                sample = self._failed_sample(iteration, exc, iteration_started)
            # Appending and leaving happen together so an iteration is never
            # both sampled and counted as interrupted.
            with self._lock:
                try:
                    self.aggregator.add_sample(sample, iteration.checks)
                except AggregatorFrozen:
                    logger.debug("Discarded late sample from VU %d iteration %d", vu_id, index)
                self._in_flight -= 1
                finished = True
            return iteration
        finally:
            if not finished:
                self._leave()

    def _perform(
        self, iteration: Iteration, session: requests.Session, iteration_started: float
    ) -> MetricSample:
        iteration.payload = self.payloads.generate(iteration.vu_id, iteration.index)
        iteration.result = self.executor.send(session, iteration.payload)
        iteration.checks = evaluate_checks(iteration.result, self.scenario.checks)

        think_ms = 0.0
        if self.scenario.think_time > 0:
            think_started = time.perf_counter()
            self.stop_event.wait(self.scenario.think_time)
            think_ms = (time.perf_counter() - think_started) * 1000.0

        latency_ms = iteration.result.latency_ms
        if self.scenario.think_time_in_latency:
            latency_ms += think_ms

        return MetricSample(
            timestamp=time.time(),
            latency_ms=latency_ms,
            status=iteration.result.status,
            error=self.executor.is_failure(iteration.result),
            iteration_ms=(time.perf_counter() - iteration_started) * 1000.0,
        )

    def _failed_sample(
        self, iteration: Iteration, exc: Exception, iteration_started: float
    ) -> MetricSample:
        elapsed_ms = (time.perf_counter() - iteration_started) * 1000.0
        message = f"{exc.__class__.__name__}: {exc}"
        with self._lock:
            first = self._iteration_errors == 0
            self._iteration_errors += 1
        if first:
            logger.warning(
                "VU %d iteration %d failed before completing: %s",
                iteration.vu_id, iteration.index, message,
            )
        else:
            logger.debug(
                "VU %d iteration %d failed before completing: %s",
                iteration.vu_id, iteration.index, message,
            )
        iteration.checks = []
        iteration.result = HttpResult(
            status=TRANSPORT_ERROR_STATUS, latency_ms=elapsed_ms, error=message
        )
        return MetricSample(
            timestamp=time.time(),
            latency_ms=elapsed_ms,
            status=TRANSPORT_ERROR_STATUS,
            error=True,
            iteration_ms=elapsed_ms,
        )

    # ---- execution --------------------------------------------------

    def execute(self) -> RunReport:
        """
        Run the scenario to completion and return its report.

        Raises:
            ConfigurationError: If the run has already been executed.
        """
        if self._executed:
            raise ConfigurationError("A Run can only be executed once")
        self._executed = True

        scenario = self.scenario
        started_at = datetime.now(timezone.utc).isoformat()
        logger.info(
            "Starting run '%s' (%s, window=%.1fs, max concurrency=%d)",
            scenario.name, scenario.executor.value, scenario.total_duration,
            scenario.max_concurrency,
        )

        self._started = time.monotonic()
        scheduler = build_scheduler(self)
        try:
            scheduler.run_window()
        finally:
            window = self.elapsed()
            aborted = self.stop_event.is_set()
            self.stop_event.set()

        still_running = scheduler.join(scenario.graceful_stop)
        with self._lock:
            interrupted = self._in_flight
            self.aggregator.freeze()
        if interrupted:
            self.aggregator.record_interrupted(interrupted)
            logger.warning(
                "%d iteration(s) still running after %.1fs graceful stop were interrupted",
                interrupted, scenario.graceful_stop,
            )
        elif still_running:
            logger.debug("%d idle worker thread(s) did not exit in time", still_running)

        summary = self.aggregator.summary(duration=window)
        verdict = evaluate_thresholds(scenario.thresholds, summary)
        logger.info(
            "Run '%s' finished: %d iteration(s), error rate %.2f%%, %d dropped, verdict %s",
            scenario.name, summary.iterations, summary.error_rate * 100,
            summary.dropped_iterations, "PASS" if verdict.passed else "FAIL",
        )
        return RunReport(
            scenario=scenario.name,
            started_at=started_at,
            duration=window,
            aborted=aborted,
            peak_concurrency=self.peak_concurrency,
            summary=summary,
            verdict=verdict,
        )
