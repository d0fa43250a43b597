"""Control-plane tick: plan new tasks, unblock ready jobs, dispatch within limits."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from agent_control_plane.control_plane.chief import decide_dispatch_limit
from agent_control_plane.control_plane.metrics import HealthReport, summarize_task_counts
from agent_control_plane.control_plane.models import (
    DISPATCHABLE_TASK_STATUSES,
    ExecutionPlan,
    SystemSnapshot,
    TaskStatus,
    TickSummary,
)
from agent_control_plane.control_plane.planner import build_execution_plan
from agent_control_plane.control_plane.repository import ControlPlaneRepository
from agent_control_plane.storage.common import utc_now

logger = logging.getLogger(__name__)

# Only the newest tasks are scanned for unblocking each tick.
TICK_TASK_SCAN_LIMIT = 200
HEALTH_TASK_SCAN_LIMIT = 200
_UNBLOCK_TASK_STATUSES = DISPATCHABLE_TASK_STATUSES | {TaskStatus.PLANNING}

PlanBuilder = Callable[..., ExecutionPlan]
LimitDecider = Callable[..., int]


def process_control_plane_tick(  # noqa: PLR0913
    *,
    repository: ControlPlaneRepository,
    build_plan: PlanBuilder = build_execution_plan,
    decide_limit: LimitDecider = decide_dispatch_limit,
    dispatcher_id: str = "control-plane-dispatcher",
    planning_batch: int = 10,
    dispatch_upper_bound: int = 10,
) -> TickSummary:
    """Run one orchestration step.

    Each step goes through repository transactions, so a tick that races an
    operator call or another tick never double-dispatches a job.
    """

    planned = 0
    for task in repository.list_planning_candidates(planning_batch):
        plan = build_plan(task, parallelism_limit=task.parallelism_limit)
        repository.attach_plan(task.task_id, plan, "planner_tick")
        planned += 1

    tasks = repository.list_tasks(TICK_TASK_SCAN_LIMIT)
    unblocked = 0
    for task in tasks:
        if task.status in _UNBLOCK_TASK_STATUSES:
            unblocked += repository.unblock_ready_jobs(task.task_id)

    progress = repository.dag_progress_for_tasks(task.task_id for task in tasks)
    queue_depth = sum(item.queued for item in progress.values())

    snapshot = repository.system_snapshot()
    snapshot = SystemSnapshot(
        emergency_stop=snapshot.emergency_stop,
        circuit_breaker=snapshot.circuit_breaker,
        global_active_jobs=snapshot.global_active_jobs,
        queue_depth=queue_depth,
    )
    dispatch_limit = decide_limit(snapshot, max_parallelism=dispatch_upper_bound)

    dispatched = 0
    if dispatch_limit > 0:
        jobs = repository.get_dispatchable_jobs(dispatch_limit)
        if jobs:
            dispatched = repository.dispatch_jobs([job.job_id for job in jobs], dispatcher_id)

    summary = TickSummary(
        planned=planned,
        unblocked=unblocked,
        dispatched=dispatched,
        queue_depth=queue_depth,
        dispatch_limit=dispatch_limit,
        snapshot=snapshot,
    )
    if planned or unblocked or dispatched:
        logger.info(
            "Tick: planned=%d unblocked=%d dispatched=%d queue_depth=%d limit=%d",
            planned,
            unblocked,
            dispatched,
            queue_depth,
            dispatch_limit,
        )
    return summary


class ControlPlaneLoop:
    """Runs the tick periodically; overlapping invocations are skipped, never queued."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: ControlPlaneRepository,
        tick_interval_seconds: float = 1.0,
        planning_batch: int = 10,
        dispatcher_id: str = "control-plane-main",
        dispatch_upper_bound: int = 10,
        tick: Callable[..., TickSummary] = process_control_plane_tick,
    ) -> None:
        self.repository = repository
        self.tick_interval_seconds = tick_interval_seconds
        self.planning_batch = planning_batch
        self.dispatcher_id = dispatcher_id
        self.dispatch_upper_bound = dispatch_upper_bound
        self._tick = tick
        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.last_tick: TickSummary | None = None
        self.last_tick_at: datetime | None = None
        self.last_tick_error: str | None = None
        self.skipped_ticks = 0

    @property
    def tick_in_flight(self) -> bool:
        return self._tick_lock.locked()

    def tick_once(self) -> TickSummary | None:
        """Run one tick unless another is in flight; ``None`` means skipped.

        Unexpected errors are recorded in ``last_tick_error`` and logged, the
        loop keeps going.
        """

        if not self._tick_lock.acquire(blocking=False):
            self.skipped_ticks += 1
            logger.warning("Tick skipped: previous tick still in flight")
            return None
        try:
            summary = self._tick(
                repository=self.repository,
                dispatcher_id=self.dispatcher_id,
                planning_batch=self.planning_batch,
                dispatch_upper_bound=self.dispatch_upper_bound,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Control-plane tick failed")
            self.last_tick_error = str(error) or type(error).__name__
            return None
        finally:
            self._tick_lock.release()

        self.last_tick = summary
        self.last_tick_at = utc_now()
        self.last_tick_error = None
        return summary

    def run_forever(self, *, max_ticks: int | None = None) -> int:
        """Tick until ``stop()`` (or SIGINT/SIGTERM) is requested; returns ticks attempted."""

        ticks = 0
        logger.info(
            "Control-plane loop started: interval=%.2fs dispatcher_id=%s",
            self.tick_interval_seconds,
            self.dispatcher_id,
        )
        with self._signal_handlers():
            while not self._stop_event.is_set():
                self.tick_once()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._stop_event.wait(self.tick_interval_seconds)
        logger.info("Control-plane loop stopped after %d ticks", ticks)
        return ticks

    def stop(self) -> None:
        self._stop_event.set()

    def health(self) -> HealthReport:
        tasks = self.repository.list_tasks(HEALTH_TASK_SCAN_LIMIT)
        return HealthReport(
            tick_in_flight=self.tick_in_flight,
            last_tick_at=self.last_tick_at,
            last_tick=self.last_tick,
            last_tick_error=self.last_tick_error,
            skipped_ticks=self.skipped_ticks,
            task_counts=summarize_task_counts(tasks),
            system=self.repository.system_snapshot(),
        )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: Any) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Stop requested by %s", name)
            self.stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
