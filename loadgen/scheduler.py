"""
Arrival schedulers.

A scheduler decides *when* iterations start.  Three arrival models are
supported, matching the k6 executors of the same names:

``constant-vus``
    A fixed number of virtual users, each looping (iteration, think
    time, repeat) until the duration elapses or its per-VU iteration cap
    is reached.

``ramping-vus``
    The virtual-user count follows an ordered list of stages, linearly
    interpolated across each stage's duration.  When the target drops,
    surplus VUs finish their current iteration and then retire.

``ramping-arrival-rate``
    Open loop: iterations start at a target rate that ramps across
    stages, whether or not earlier iterations have finished.  Iterations
    are handed to a pool of VU threads that starts at
    ``pre_allocated_vus`` and grows on demand up to ``max_vus``.  When
    every VU is busy and the pool is at its cap, the iteration is
    recorded as dropped instead of delaying the schedule.

All schedulers run their control loop in the calling thread
(:meth:`Scheduler.run_window`) and do the actual work on daemon worker
threads, which :meth:`Scheduler.join` waits for after the window closes.
No scheduler ever runs more than ``scenario.max_concurrency`` iterations
at once.
"""

from __future__ import annotations

import logging
import math
import queue
import threading
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

from loadgen.errors import SchedulingOverflow
from loadgen.models import ArrivalModel, Stage

if TYPE_CHECKING:
    from loadgen.run import Run

logger = logging.getLogger(__name__)

# Minimum seconds between "dropped iteration" warnings.
DROP_WARNING_INTERVAL = 1.0


def target_at(stages: Sequence[Stage], start: float, elapsed: float) -> float:
    """
    Return the linearly interpolated stage target at ``elapsed`` seconds.

    Each stage moves from the previous level (``start`` for the first
    stage) to its own ``target`` over its ``duration``.  Past the last
    stage the final target holds.
    """
    previous = start
    remaining = max(elapsed, 0.0)
    for stage in stages:
        if remaining < stage.duration:
            fraction = remaining / stage.duration
            return previous + (stage.target - previous) * fraction
        remaining -= stage.duration
        previous = stage.target
    return previous


def cumulative_arrivals(
    stages: Sequence[Stage], start_rate: float, time_unit: float, elapsed: float
) -> float:
    """
    Number of iterations due between time 0 and ``elapsed``.

    This is the exact integral of the piecewise-linear rate curve, so the
    schedule does not drift with the scheduler's tick size.
    """
    previous = start_rate
    remaining = max(elapsed, 0.0)
    total = 0.0
    for stage in stages:
        if remaining < stage.duration:
            end_rate = previous + (stage.target - previous) * (remaining / stage.duration)
            total += (previous + end_rate) / 2.0 * remaining
            return total / time_unit
        total += (previous + stage.target) / 2.0 * stage.duration
        remaining -= stage.duration
        previous = stage.target
    total += previous * remaining
    return total / time_unit


class Scheduler:
    """Base class holding the shared run, worker list and stop signal."""

    def __init__(self, run: Run):
        self.run = run
        self.scenario = run.scenario
        self.tick = run.config.SCHEDULER_TICK
        self._threads: list[threading.Thread] = []

    def _spawn(self, name: str, target, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()
        return thread

    def _window_open(self) -> bool:
        return not self.run.stop_event.is_set() and self.run.elapsed() < self.scenario.total_duration

    def run_window(self) -> None:
        """Schedule iterations until the window closes or the run is stopped."""
        raise NotImplementedError

    def join(self, timeout: float) -> int:
        """
        Wait up to ``timeout`` seconds for worker threads to exit.

        Returns:
            The number of worker threads still alive afterwards.
        """
        deadline = time.monotonic() + timeout
        for thread in list(self._threads):
            thread.join(max(deadline - time.monotonic(), 0.0))
        return sum(1 for thread in self._threads if thread.is_alive())

    def _vu_loop(self, vu_id: int, retire: threading.Event | None = None) -> None:
        """Closed-loop virtual user: iterate until stopped, retired or capped."""
        cap = self.scenario.iterations
        session = self.run.new_session()
        index = 0
        try:
            while not self.run.stop_event.is_set():
                if retire is not None and retire.is_set():
                    break
                if cap is not None and index >= cap:
                    break
                self.run.run_iteration(vu_id, index, session)
                index += 1
        finally:
            session.close()
            logger.debug("VU %d finished after %d iteration(s)", vu_id, index)


class ConstantVusScheduler(Scheduler):
    """A fixed set of looping virtual users."""

    def run_window(self) -> None:
        for vu_id in range(1, self.scenario.vus + 1):
            self._spawn(f"vu-{vu_id}", self._vu_loop, vu_id)

        # With no duration the run lasts until every VU hits its cap.
        unbounded = self.scenario.duration <= 0
        while not self.run.stop_event.is_set():
            if not unbounded and self.run.elapsed() >= self.scenario.duration:
                break
            if not any(thread.is_alive() for thread in self._threads):
                break
            self.run.stop_event.wait(self.tick)


class RampingVusScheduler(Scheduler):
    """Virtual-user count follows the stage ramp."""

    def __init__(self, run: Run):
        super().__init__(run)
        self._vus: dict[int, tuple[threading.Thread, threading.Event]] = {}

    def _alive(self) -> dict[int, tuple[threading.Thread, threading.Event]]:
        self._vus = {
            vu_id: entry for vu_id, entry in self._vus.items() if entry[0].is_alive()
        }
        return self._vus

    def _active_ids(self) -> list[int]:
        return sorted(vu_id for vu_id, (_, retire) in self._alive().items() if not retire.is_set())

    def _scale_to(self, target: int) -> None:
        active = self._active_ids()

        if len(active) > target:
            for vu_id in reversed(active[target:]):
                self._vus[vu_id][1].set()
            logger.debug("Retiring %d VU(s), target=%d", len(active) - target, target)
            return

        needed = target - len(active)
        # Retiring VUs still occupy a slot until their iteration ends;
        # bring them back before starting new threads.
        for vu_id, (_, retire) in sorted(self._vus.items()):
            if needed == 0:
                return
            if retire.is_set():
                retire.clear()
                needed -= 1

        vu_id = 1
        while needed > 0 and len(self._vus) < self.scenario.max_vus:
            if vu_id not in self._vus:
                retire = threading.Event()
                thread = self._spawn(f"vu-{vu_id}", self._vu_loop, vu_id, retire)
                self._vus[vu_id] = (thread, retire)
                needed -= 1
            vu_id += 1

    def run_window(self) -> None:
        while self._window_open():
            level = target_at(self.scenario.stages, self.scenario.start_vus, self.run.elapsed())
            self._scale_to(min(int(math.floor(level + 0.5)), self.scenario.max_vus))
            self.run.stop_event.wait(self.tick)


class _PoolVU:
    """One arrival-rate worker thread and its inbox."""

    def __init__(self, vu_id: int):
        self.vu_id = vu_id
        self.inbox: queue.SimpleQueue[int | None] = queue.SimpleQueue()
        self.thread: threading.Thread | None = None


class VuPool:
    """
    Bounded pool of VU threads for open-loop scheduling.

    Starts with ``pre_allocated`` idle VUs and adds one whenever an
    iteration is due and none is idle, up to ``max_vus``.
    """

    def __init__(self, scheduler: RampingArrivalRateScheduler, pre_allocated: int, max_vus: int):
        self._scheduler = scheduler
        self._run = scheduler.run
        self.max_vus = max_vus
        self._lock = threading.Lock()
        self._idle: list[_PoolVU] = []
        self._all: list[_PoolVU] = []
        for _ in range(min(pre_allocated, max_vus)):
            self._idle.append(self._allocate())

    @property
    def size(self) -> int:
        return len(self._all)

    def _allocate(self) -> _PoolVU:
        vu = _PoolVU(len(self._all) + 1)
        vu.thread = self._scheduler._spawn(f"vu-{vu.vu_id}", self._worker, vu)
        self._all.append(vu)
        return vu

    def dispatch(self, index: int) -> None:
        """
        Hand iteration ``index`` to an idle VU.

        Raises:
            SchedulingOverflow: If every VU is busy and the pool is full.
        """
        with self._lock:
            if self._idle:
                vu = self._idle.pop()
            elif len(self._all) < self.max_vus:
                vu = self._allocate()
                logger.warning(
                    "All %d pre-allocated VUs busy; pool grown to %d of %d",
                    len(self._all) - 1, len(self._all), self.max_vus,
                )
            else:
                raise SchedulingOverflow(f"all {self.max_vus} VUs busy")
        vu.inbox.put(index)

    def _worker(self, vu: _PoolVU) -> None:
        session = self._run.new_session()
        try:
            while True:
                index = vu.inbox.get()
                if index is None:
                    return
                self._run.run_iteration(vu.vu_id, index, session)
                with self._lock:
                    self._idle.append(vu)
        finally:
            session.close()

    def shutdown(self) -> None:
        with self._lock:
            for vu in self._all:
                vu.inbox.put(None)


class RampingArrivalRateScheduler(Scheduler):
    """Open-loop scheduler: starts iterations on a rate curve."""

    def __init__(self, run: Run):
        super().__init__(run)
        self.pool = VuPool(self, self.scenario.pre_allocated_vus, self.scenario.max_vus)
        self.dropped = 0
        self._last_drop_warning = float("-inf")

    def _due(self, elapsed: float) -> float:
        return cumulative_arrivals(
            self.scenario.stages, self.scenario.start_rate, self.scenario.time_unit, elapsed
        )

    def _trigger(self, index: int) -> None:
        try:
            self.pool.dispatch(index)
        except SchedulingOverflow as exc:
            self.dropped += 1
            self.run.aggregator.record_dropped_iteration()
            now = time.monotonic()
            if now - self._last_drop_warning >= DROP_WARNING_INTERVAL:
                self._last_drop_warning = now
                logger.warning(
                    "Dropped iteration %d (%s); %d dropped so far", index, exc, self.dropped
                )

    def run_window(self) -> None:
        window = self.scenario.total_duration
        issued = 0
        while not self.run.stop_event.is_set():
            elapsed = min(self.run.elapsed(), window)
            due = self._due(elapsed)
            # Trigger every iteration whose start time has passed.
            while issued + 1 <= due + 1e-9:
                self._trigger(issued)
                issued += 1
            if elapsed >= window:
                break
            self.run.stop_event.wait(self.tick)
        logger.info(
            "Arrival-rate schedule issued %d iteration(s), dropped %d, pool size %d",
            issued, self.dropped, self.pool.size,
        )

    def join(self, timeout: float) -> int:
        self.pool.shutdown()
        return super().join(timeout)


_SCHEDULERS: dict[ArrivalModel, type[Scheduler]] = {
    ArrivalModel.CONSTANT_VUS: ConstantVusScheduler,
    ArrivalModel.RAMPING_VUS: RampingVusScheduler,
    ArrivalModel.RAMPING_ARRIVAL_RATE: RampingArrivalRateScheduler,
}


def build_scheduler(run: Run) -> Scheduler:
    """Return the scheduler matching the run's arrival model."""
    return _SCHEDULERS[run.scenario.executor](run)
