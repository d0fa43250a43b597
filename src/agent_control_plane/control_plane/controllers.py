"""Controllers for control-plane CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_control_plane.config import Settings
from agent_control_plane.control_plane.dispatcher import ControlPlaneLoop
from agent_control_plane.control_plane.errors import ControlPlaneValidationError
from agent_control_plane.control_plane.metrics import render_health_lines
from agent_control_plane.control_plane.models import (
    JobView,
    TaskCreate,
    TaskDetails,
    WorkerResult,
)
from agent_control_plane.control_plane.repository import ControlPlaneRepository
from agent_control_plane.control_plane.worker_adapter import worker_payload_for_job


@dataclass(slots=True)
class HealthCommand:
    """CLI input for health report."""

    db_path: Path | None
    as_json: bool = False


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    goal: str
    repo: str
    branch: str | None
    acceptance_criteria: tuple[str, ...]
    priority: str | None
    risk_profile: str | None
    parallelism_limit: int | None
    rollback_available: bool
    requested_by: str | None


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: str
    events: int = 20


@dataclass(slots=True)
class TaskControlCommand:
    """CLI input for per-task control actions."""

    db_path: Path | None
    task_id: str
    action: str
    requested_by: str | None
    reason: str | None


@dataclass(slots=True)
class GlobalControlCommand:
    """CLI input for emergency-stop clear / circuit reset."""

    db_path: Path | None
    action: str
    requested_by: str | None
    reason: str | None


@dataclass(slots=True)
class WorkerClaimCommand:
    db_path: Path | None
    worker_id: str
    limit: int


@dataclass(slots=True)
class WorkerReportCommand:
    """CLI input for a worker result report."""

    db_path: Path | None
    job_id: str
    status: str
    worker_id: str | None
    error: str | None
    artifacts_json: str | None
    logs_json: str | None
    metrics_json: str | None


@dataclass(slots=True)
class TickCommand:
    db_path: Path | None


@dataclass(slots=True)
class RunLoopCommand:
    """CLI input for the long-running tick loop."""

    db_path: Path | None
    max_ticks: int | None


class ControlPlaneCliController:
    """Coordinates task, control, worker, and tick CLI operations."""

    def health(self, command: HealthCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            report = _loop(repository, settings).health()
        if command.as_json:
            return [_json_line(report.to_dict())]
        return render_health_lines(report)

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(command.limit)

        if not tasks:
            return ["No tasks found."]
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"- {task.task_id} status={task.status.value} priority={task.priority.value} "
                f"risk={task.risk_profile.value} repo={task.repo}@{task.branch} "
                f"created_at={task.created_at.isoformat()}"
                + (" degraded" if task.degraded else ""),
            )
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.create_task(
                TaskCreate(
                    goal=command.goal,
                    repo=command.repo,
                    branch=command.branch,
                    acceptance_criteria=list(command.acceptance_criteria),
                    priority=command.priority,
                    risk_profile=command.risk_profile,
                    parallelism_limit=command.parallelism_limit,
                    rollback_available=command.rollback_available,
                    source="cli",
                    requested_by=command.requested_by,
                ),
            )

        task = details.task
        return [
            "Task created: "
            f"task_id={task.task_id} status={task.status.value} "
            f"priority={task.priority.value} risk={task.risk_profile.value} "
            f"parallelism={task.parallelism_limit}",
        ]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]
        return _render_task_details(details, events=command.events)

    def control_task(self, command: TaskControlCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.control_task(
                command.task_id,
                command.action,
                requested_by=command.requested_by,
                reason=command.reason,
            )
        controls = details.controls
        return [
            f"Task control applied: task_id={details.task_id} action={command.action} "
            f"status={details.status.value}",
            f"Emergency stop: {'active' if controls.emergency_stop.active else 'off'}",
        ]

    def control_global(self, command: GlobalControlCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = repository.control_global(
                command.action,
                requested_by=command.requested_by,
                reason=command.reason,
            )
        return [
            f"Global control applied: action={command.action}",
            f"Emergency stop: {'active' if result.emergency_stop.active else 'off'}",
            (
                f"Circuit breaker: {result.circuit_breaker.status.value} "
                f"failures={result.circuit_breaker.failure_count}"
            ),
        ]

    def claim(self, command: WorkerClaimCommand) -> list[str]:
        """Claim dispatched jobs and print the worker payloads as JSON."""

        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.claim_dispatched_jobs(command.worker_id, command.limit)
        return [_json_line({"jobs": [worker_payload_for_job(job) for job in jobs]})]

    def report(self, command: WorkerReportCommand) -> list[str]:
        """Apply a worker result and print the outcome as JSON."""

        result = WorkerResult(
            job_id=command.job_id,
            status=command.status,
            worker_id=command.worker_id,
            error=command.error,
            artifacts=_parse_json_option("artifacts", command.artifacts_json),
            logs=_parse_json_option("logs", command.logs_json),
            metrics=_parse_json_option("metrics", command.metrics_json),
        )
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            outcome = repository.apply_worker_result(result)

        task = outcome.task
        return [
            _json_line(
                {
                    "duplicate": outcome.duplicate,
                    "job": _job_summary(outcome.job),
                    "task": (
                        {
                            "task_id": task.task_id,
                            "status": task.status.value,
                            "failed_reason": task.task.failed_reason,
                            "degraded": task.task.degraded,
                        }
                        if task is not None
                        else None
                    ),
                },
            ),
        ]

    def tick(self, command: TickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            loop = _loop(repository, settings)
            summary = loop.tick_once()
            error = loop.last_tick_error

        if summary is None:
            return [f"Tick failed: {error}"]
        return [
            "Tick summary: "
            f"planned={summary.planned} unblocked={summary.unblocked} "
            f"dispatched={summary.dispatched} queue_depth={summary.queue_depth} "
            f"dispatch_limit={summary.dispatch_limit}",
        ]

    def run_loop(self, command: RunLoopCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            loop = _loop(repository, settings)
            ticks = loop.run_forever(max_ticks=command.max_ticks)
            report = loop.health()

        return [f"Loop stopped: ticks={ticks} skipped={report.skipped_ticks}"] + (
            [f"Last tick error: {report.last_tick_error}"] if report.last_tick_error else []
        )


def _render_task_details(details: TaskDetails, *, events: int) -> list[str]:
    task = details.task
    progress = details.dag_progress
    lines = [
        f"Task: {task.task_id}",
        f"Status: {task.status.value}" + (" (degraded)" if task.degraded else ""),
        f"Goal: {task.goal}",
        f"Repo: {task.repo}@{task.branch}",
        f"Priority: {task.priority.value} risk={task.risk_profile.value} "
        f"parallelism={task.parallelism_limit}",
        (
            "DAG progress: "
            f"total={progress.total} blocked={progress.blocked} queued={progress.queued} "
            f"dispatched={progress.dispatched} running={progress.running} "
            f"completed={progress.completed} failed={progress.failed} "
            f"timeout={progress.timeout} canceled={progress.canceled}"
        ),
    ]
    if task.failed_reason:
        lines.append(f"Failed reason: {task.failed_reason}")
    for criterion in task.acceptance_criteria:
        lines.append(f"  criterion: {criterion}")

    if details.jobs:
        lines.append("Jobs:")
        for job in details.jobs:
            lines.append(
                f"  - {job.node_id} role={job.role} status={job.status.value} "
                f"attempt={job.attempt}/{job.max_retries} worker={job.worker_id or '-'}"
                + (f" error={job.last_error}" if job.last_error else ""),
            )

    shown = details.events[-events:] if events > 0 else []
    if shown:
        lines.append(f"Events (last {len(shown)}):")
        for event in shown:
            lines.append(f"  {event.ts.isoformat()} {event.event_type}")
    if details.decisions:
        lines.append("Decisions:")
        for decision in details.decisions:
            lines.append(f"  {decision.ts.isoformat()} {decision.decision}: {decision.reason}")
    if details.rollbacks:
        lines.append("Rollbacks:")
        for rollback in details.rollbacks:
            lines.append(f"  {rollback.ts.isoformat()} {rollback.status}: {rollback.reason}")
    return lines


def _job_summary(job: JobView) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "task_id": job.task_id,
        "node_id": job.node_id,
        "status": job.status.value,
        "attempt": job.attempt,
        "worker_id": job.worker_id,
        "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
        "last_error": job.last_error,
    }


def _parse_json_option(name: str, raw: str | None) -> Any:
    if raw is None or raw.strip() == "":
        return None
    try:
        return json.loads(raw)
    except ValueError as error:
        raise ControlPlaneValidationError(f"--{name} must be valid JSON") from error


def _json_line(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _loop(repository: ControlPlaneRepository, settings: Settings) -> ControlPlaneLoop:
    return ControlPlaneLoop(
        repository=repository,
        tick_interval_seconds=settings.loop.tick_interval_seconds,
        planning_batch=settings.loop.planning_batch,
        dispatcher_id=settings.loop.dispatcher_id,
        dispatch_upper_bound=settings.scheduler.global_parallelism,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[ControlPlaneRepository]:
    settings.validate()
    repository = ControlPlaneRepository(
        db_path=settings.db_path,
        global_parallelism=settings.scheduler.global_parallelism,
        default_task_parallelism=settings.scheduler.default_task_parallelism,
        circuit_threshold=settings.scheduler.circuit_threshold,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
