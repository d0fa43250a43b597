"""Durable task/job state machine backed by SQLModel + SQLite.

Every public mutation runs in one ``BEGIN IMMEDIATE`` transaction (see
``build_sqlite_engine``), and every job status transition is a conditional
``UPDATE ... WHERE status = <expected>``. A caller that loses a race observes
a rowcount of zero and skips, so dispatch, claim and result application are
applied at most once even with concurrent ticks and API calls.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import func, literal_column, or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_control_plane.control_plane.common import (
    clamp_int,
    parse_bool,
    random_id,
    safe_str_list,
    truncate,
)
from agent_control_plane.control_plane.errors import (
    ControlPlaneValidationError,
    JobNotFoundError,
    JobOwnershipError,
    TaskNotFoundError,
    UnsupportedActionError,
)
from agent_control_plane.control_plane.models import (
    DISPATCHABLE_TASK_STATUSES,
    IN_FLIGHT_JOB_STATUSES,
    OUTSTANDING_JOB_STATUSES,
    PLANNING_TASK_STATUSES,
    TERMINAL_JOB_STATUSES,
    TERMINAL_TASK_STATUSES,
    CircuitBreakerView,
    CircuitStatus,
    ControlsView,
    DagProgress,
    DecisionView,
    EmergencyStopView,
    ExecutionPlan,
    GlobalControlAction,
    GlobalControlResult,
    JobStatus,
    JobView,
    Priority,
    RiskProfile,
    RollbackView,
    SystemSnapshot,
    TaskControlAction,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    WorkerResult,
    WorkerResultOutcome,
)
from agent_control_plane.control_plane.policy import (
    can_dispatch_high_risk,
    is_critical_role,
    is_high_risk_job,
    next_run_at_from_attempt,
    rollback_descriptor,
)
from agent_control_plane.storage.alembic_runner import upgrade_head
from agent_control_plane.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_control_plane.storage.sqlmodel_models import (
    EMERGENCY_STOP_KEY,
    GLOBAL_SCOPE,
    CircuitBreakerRow,
    DecisionRecordRow,
    JobRow,
    RollbackRecordRow,
    SystemControlRow,
    TaskEventRow,
    TaskPlanRow,
    TaskRow,
)

logger = logging.getLogger(__name__)

MAX_ACCEPTANCE_CRITERIA = 60
EVENTS_PER_TASK = 400
DECISIONS_PER_TASK = 200
ROLLBACKS_PER_TASK = 40
_JOB_ORDER = (col(JobRow.created_at).asc(), literal_column("jobs.rowid").asc())

_RESULT_STATUS_ALIASES: dict[str, JobStatus] = {
    **dict.fromkeys(("completed", "complete", "success", "succeeded", "ok"), JobStatus.COMPLETED),
    **dict.fromkeys(("failed", "fail", "error"), JobStatus.FAILED),
    **dict.fromkeys(("timeout", "timed_out"), JobStatus.TIMEOUT),
    **dict.fromkeys(
        ("interrupted", "aborted", "stopped", "canceled", "cancelled"),
        JobStatus.CANCELED,
    ),
}


def normalize_priority(value: object) -> Priority:
    normalized = str(value or "").strip().upper()
    try:
        return Priority(normalized)
    except ValueError:
        return Priority.P1


def normalize_risk_profile(value: object) -> RiskProfile:
    normalized = str(value or "").strip().lower()
    try:
        return RiskProfile(normalized)
    except ValueError:
        return RiskProfile.MEDIUM


def normalize_worker_result_status(value: object) -> JobStatus:
    """Map a worker-reported status onto a terminal job status; unknown means failed."""

    return _RESULT_STATUS_ALIASES.get(str(value or "").strip().lower(), JobStatus.FAILED)


class ControlPlaneRepository:
    """System of record for tasks, plans, jobs, audit trail, and global controls."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        global_parallelism: int = 10,
        default_task_parallelism: int = 8,
        circuit_threshold: int = 3,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.global_parallelism = clamp_int(global_parallelism, 1, 20, 10)
        self.default_task_parallelism = clamp_int(default_task_parallelism, 1, 10, 8)
        self.circuit_threshold = clamp_int(circuit_threshold, 1, 20, 3)

        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations and seed the global control rows."""

        upgrade_head(self.db_path)
        with Session(self.engine) as session:
            self._circuit_row(session)
            if session.get(SystemControlRow, EMERGENCY_STOP_KEY) is None:
                session.add(
                    SystemControlRow(
                        key=EMERGENCY_STOP_KEY,
                        value_json=_emergency_stop_json(EmergencyStopView()),
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
            session.commit()

    # -- tasks ---------------------------------------------------------------

    def create_task(
        self,
        spec: TaskCreate | Mapping[str, Any],
        *,
        default_parallelism: int | None = None,
    ) -> TaskDetails:
        """Validate and insert a queued task."""

        data = spec.to_mapping() if isinstance(spec, TaskCreate) else dict(spec or {})
        goal = str(data.get("goal") or "").strip()
        repo = str(data.get("repo") or "").strip()
        branch = str(data.get("branch") or "").strip() or "main"
        if not goal:
            raise ControlPlaneValidationError("goal is required")
        if not repo:
            raise ControlPlaneValidationError("repo is required")

        now = utc_now()
        db_now = to_db_datetime(now)
        task_id = random_id("task")
        criteria = safe_str_list(data.get("acceptance_criteria"), MAX_ACCEPTANCE_CRITERIA)
        priority = normalize_priority(data.get("priority"))
        risk_profile = normalize_risk_profile(data.get("risk_profile"))
        parallelism = clamp_int(
            data.get("parallelism_limit"),
            1,
            10,
            clamp_int(default_parallelism, 1, 10, self.default_task_parallelism),
        )
        metadata = {
            "rollback_available": parse_bool(data.get("rollback_available"), fallback=True),
            "source": truncate(data.get("source"), 120) or "api",
            "requested_by": truncate(data.get("requested_by"), 120),
        }

        with Session(self.engine) as session:
            session.add(
                TaskRow(
                    task_id=task_id,
                    goal=goal,
                    repo=repo,
                    branch=branch,
                    acceptance_criteria_json=dump_json(criteria) or "[]",
                    priority=priority.value,
                    risk_profile=risk_profile.value,
                    status=TaskStatus.QUEUED.value,
                    parallelism_limit=parallelism,
                    metadata_json=dump_json(metadata) or "{}",
                    created_at=db_now,
                    updated_at=db_now,
                    degraded=False,
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="task.created",
                payload={
                    "goal": goal,
                    "repo": repo,
                    "branch": branch,
                    "priority": priority.value,
                    "risk_profile": risk_profile.value,
                    "parallelism_limit": parallelism,
                },
                ts=db_now,
            )
            details = self._hydrate(session, self._require_task_row(session, task_id))
            session.commit()
        return details

    def list_tasks(self, limit: int = 40) -> list[TaskView]:
        """Newest tasks first."""

        safe_limit = clamp_int(limit, 1, 200, 40)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow).order_by(col(TaskRow.created_at).desc()).limit(safe_limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def get_task(self, task_id: str) -> TaskDetails | None:
        with Session(self.engine) as session:
            row = self._task_row(session, task_id)
            if row is None:
                return None
            return self._hydrate(session, row)

    def list_planning_candidates(self, limit: int = 10) -> list[TaskView]:
        """Oldest tasks still waiting for a plan."""

        safe_limit = clamp_int(limit, 1, 100, 10)
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(col(TaskRow.status).in_([s.value for s in PLANNING_TASK_STATUSES]))
                .order_by(col(TaskRow.created_at).asc())
                .limit(safe_limit),
            ).all()
            return [_to_task_view(row) for row in rows]

    def dag_progress_for_tasks(self, task_ids: Iterable[str]) -> dict[str, DagProgress]:
        """Job counters per task, keyed by task id (tasks without jobs get zeros)."""

        ids = list(dict.fromkeys(task_ids))
        progress = {task_id: DagProgress() for task_id in ids}
        if not ids:
            return progress
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRow.task_id, JobRow.status, func.count())
                .where(col(JobRow.task_id).in_(ids))
                .group_by(JobRow.task_id, JobRow.status),
            ).all()
        for task_id, status, count in rows:
            _bump_progress(progress[task_id], status, int(count))
        return progress

    # -- planning ------------------------------------------------------------

    def attach_plan(
        self,
        task_id: str,
        plan: ExecutionPlan | Mapping[str, Any],
        reason: str = "initial_plan",
    ) -> TaskDetails:
        """Persist a plan and materialize one job per node (only once per task)."""

        plan_data = plan.to_dict() if isinstance(plan, ExecutionPlan) else dict(plan or {})
        nodes = plan_data.get("nodes")
        if not isinstance(nodes, list) or not nodes:
            raise ControlPlaneValidationError("execution plan must include nodes")

        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._require_task_row(session, task_id)

            plan_row = session.get(TaskPlanRow, task_id)
            if plan_row is None:
                session.add(
                    TaskPlanRow(task_id=task_id, plan_json=dump_json(plan_data), updated_at=db_now),
                )
            else:
                plan_row.plan_json = dump_json(plan_data) or "{}"
                plan_row.updated_at = db_now
                session.add(plan_row)

            existing_jobs = session.exec(
                select(func.count()).select_from(JobRow).where(JobRow.task_id == task_id),
            ).one()
            created_jobs = 0
            if existing_jobs == 0:
                for node in nodes:
                    session.add(_job_row_for_node(task_id=task_id, node=node, db_now=db_now))
                    created_jobs += 1

            parallelism = clamp_int(
                plan_data.get("parallelism_limit"),
                1,
                10,
                self.default_task_parallelism,
            )
            self._update_task(
                session,
                task_id,
                status=TaskStatus.RUNNING.value,
                parallelism_limit=parallelism,
                updated_at=db_now,
                started_at=func.coalesce(col(TaskRow.started_at), db_now),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="task.planned",
                payload={
                    "reason": reason,
                    "nodes": [str(node.get("node_id")) for node in nodes],
                    "edges": plan_data.get("edges") or [],
                    "parallelism_limit": parallelism,
                },
                ts=db_now,
            )
            self._add_decision(
                session=session,
                task_id=task_id,
                decision="plan_created",
                reason=reason,
                evidence={"node_count": len(nodes), "parallelism_limit": parallelism},
                ts=db_now,
            )
            details = self._hydrate(session, self._require_task_row(session, task_id))
            session.commit()

        logger.info(
            "Plan attached: task_id=%s nodes=%d new_jobs=%d parallelism=%d",
            task_id,
            len(nodes),
            created_jobs,
            parallelism,
        )
        return details

    def unblock_ready_jobs(self, task_id: str) -> int:
        """Queue every blocked job whose dependencies have all completed."""

        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            changed = self._unblock_ready_jobs(session, task_id, db_now)
            session.commit()
        return changed

    def recompute_task_status(self, task_id: str) -> TaskView | None:
        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._recompute_task_status(session, task_id, db_now)
            view = _to_task_view(row) if row is not None else None
            session.commit()
        return view

    # -- dispatch ------------------------------------------------------------

    def get_dispatchable_jobs(self, limit: int = 10) -> list[JobView]:
        """Select due queued jobs within global, per-task and high-risk limits.

        Candidates are taken oldest first. A job is skipped when its task
        already has ``parallelism_limit`` jobs in flight, or when it is a
        release job that the circuit breaker / rollback policy forbids.
        """

        safe_limit = clamp_int(limit, 1, 200, self.global_parallelism)
        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            if self._emergency_stop(session).active:
                return []

            circuit = _to_circuit_view(self._circuit_row(session))
            available = max(0, self.global_parallelism - self._global_active_jobs(session))
            slots = min(safe_limit, available)
            if slots <= 0:
                return []

            candidates = session.exec(
                select(JobRow, TaskRow.parallelism_limit, TaskRow.metadata_json)
                .join(TaskRow, col(TaskRow.task_id) == col(JobRow.task_id))
                .where(
                    JobRow.status == JobStatus.QUEUED.value,
                    or_(col(JobRow.next_run_at).is_(None), col(JobRow.next_run_at) <= db_now),
                    col(TaskRow.status).in_([s.value for s in DISPATCHABLE_TASK_STATUSES]),
                )
                .order_by(*_JOB_ORDER)
                .limit(slots * 6 + 20),
            ).all()
            if not candidates:
                return []

            active_by_task = self._in_flight_counts_by_task(
                session,
                {job.task_id for job, _, _ in candidates},
            )

        selected: list[JobView] = []
        for job, task_parallelism, metadata_json in candidates:
            if len(selected) >= slots:
                break
            task_active = active_by_task.get(job.task_id, 0)
            per_task_limit = clamp_int(task_parallelism, 1, 10, self.default_task_parallelism)
            if task_active >= per_task_limit:
                continue
            metadata = load_json(metadata_json, {})
            if is_high_risk_job(job) and not can_dispatch_high_risk(metadata, circuit, False):
                continue
            selected.append(_to_job_view(job))
            active_by_task[job.task_id] = task_active + 1
        return selected

    def dispatch_jobs(self, job_ids: Iterable[str], dispatcher_id: str = "dispatcher") -> int:
        """Move queued jobs to dispatched; jobs already taken by someone else are skipped."""

        ids = [job_id for job_id in job_ids if job_id]
        if not ids:
            return 0

        db_now = to_db_datetime(utc_now())
        dispatched = 0
        with Session(self.engine) as session:
            for job_id in ids:
                if not self._transition_job(
                    session,
                    job_id,
                    expected=JobStatus.QUEUED,
                    status=JobStatus.DISPATCHED.value,
                    updated_at=db_now,
                ):
                    logger.debug("Dispatch skipped, job no longer queued: %s", job_id)
                    continue
                dispatched += 1
                job = self._require_job_row(session, job_id)
                self._add_event(
                    session=session,
                    task_id=job.task_id,
                    event_type="job.dispatched",
                    payload={
                        "job_id": job_id,
                        "node_id": job.node_id,
                        "dispatcher_id": dispatcher_id,
                    },
                    ts=db_now,
                )
            session.commit()
        return dispatched

    def claim_dispatched_jobs(self, worker_id: str, limit: int = 1) -> list[JobView]:
        """Hand up to ``limit`` dispatched jobs to a pulling worker.

        Jobs pinned to another worker by an earlier attempt stay dispatched for
        their owner.
        """

        claimer = str(worker_id or "").strip()
        if not claimer:
            raise ControlPlaneValidationError("worker_id is required")
        safe_limit = clamp_int(limit, 1, 20, 1)

        db_now = to_db_datetime(utc_now())
        claimed: list[JobView] = []
        with Session(self.engine) as session:
            if self._emergency_stop(session).active:
                return []

            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.DISPATCHED.value,
                    or_(col(JobRow.worker_id).is_(None), col(JobRow.worker_id) == claimer),
                )
                .order_by(*_JOB_ORDER)
                .limit(safe_limit),
            ).all()
            candidates = [(row.job_id, row.task_id, row.node_id, row.attempt) for row in rows]

            for job_id, task_id, node_id, attempt in candidates:
                if not self._transition_job(
                    session,
                    job_id,
                    expected=JobStatus.DISPATCHED,
                    status=JobStatus.RUNNING.value,
                    worker_id=claimer,
                    started_at=func.coalesce(col(JobRow.started_at), db_now),
                    updated_at=db_now,
                ):
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="job.running",
                    payload={
                        "job_id": job_id,
                        "node_id": node_id,
                        "worker_id": claimer,
                        "attempt": attempt,
                    },
                    ts=db_now,
                )
                self._recompute_task_status(session, task_id, db_now)
                claimed.append(_to_job_view(self._require_job_row(session, job_id)))
            session.commit()
        return claimed

    # -- worker results ------------------------------------------------------

    def apply_worker_result(self, result: WorkerResult | Mapping[str, Any]) -> WorkerResultOutcome:
        """Apply a worker's report for one job: complete, retry, or fail terminally."""

        data = _worker_result_mapping(result)
        job_id = str(data.get("job_id") or "").strip()
        if not job_id:
            raise ControlPlaneValidationError("job_id is required")

        reporter = truncate(data.get("worker_id"), 120)
        status = normalize_worker_result_status(data.get("status"))
        error_message = truncate(data.get("error"), 500)
        artifacts_json = dump_json(data.get("artifacts"))
        logs_json = dump_json(data.get("logs"))
        metrics_json = dump_json(data.get("metrics"))

        now = utc_now()
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            row = self._require_job_row(session, job_id)
            current = JobStatus(row.status)
            task_id, node_id, role = row.task_id, row.node_id, row.role
            attempt, max_retries = row.attempt, row.max_retries

            if current in TERMINAL_JOB_STATUSES:
                logger.debug("Duplicate result for terminal job %s (%s)", job_id, current.value)
                return WorkerResultOutcome(
                    job=_to_job_view(row),
                    task=self._hydrate_by_id(session, task_id),
                    duplicate=True,
                )
            if reporter and row.worker_id and row.worker_id != reporter:
                raise JobOwnershipError(job_id, owner=row.worker_id, reporter=reporter)

            failure_summary = error_message or f"{node_id} {status.value}"
            next_attempt = attempt + 1

            if status == JobStatus.COMPLETED:
                applied = self._transition_job(
                    session,
                    job_id,
                    expected=current,
                    status=JobStatus.COMPLETED.value,
                    worker_id=func.coalesce(col(JobRow.worker_id), reporter),
                    artifacts_json=artifacts_json,
                    logs_json=logs_json,
                    metrics_json=metrics_json,
                    updated_at=db_now,
                    finished_at=func.coalesce(col(JobRow.finished_at), db_now),
                )
                if applied:
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type="job.completed",
                        payload={"job_id": job_id, "node_id": node_id, "worker_id": reporter},
                        ts=db_now,
                    )
                    if is_critical_role(role):
                        self._register_critical_success(session, db_now)
            elif status in {JobStatus.FAILED, JobStatus.TIMEOUT} and attempt < max_retries:
                next_run_at = next_run_at_from_attempt(now, next_attempt)
                applied = self._transition_job(
                    session,
                    job_id,
                    expected=current,
                    status=JobStatus.QUEUED.value,
                    worker_id=func.coalesce(col(JobRow.worker_id), reporter),
                    attempt=next_attempt,
                    last_error=failure_summary,
                    next_run_at=to_db_datetime(next_run_at),
                    logs_json=logs_json,
                    metrics_json=metrics_json,
                    updated_at=db_now,
                )
                if applied:
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type="job.retry_scheduled",
                        payload={
                            "job_id": job_id,
                            "node_id": node_id,
                            "attempt": next_attempt,
                            "max_retries": max_retries,
                            "next_run_at": next_run_at.isoformat(),
                            "error": error_message,
                            "status": status.value,
                        },
                        ts=db_now,
                    )
            else:
                applied = self._transition_job(
                    session,
                    job_id,
                    expected=current,
                    status=status.value,
                    worker_id=func.coalesce(col(JobRow.worker_id), reporter),
                    attempt=next_attempt,
                    last_error=failure_summary,
                    logs_json=logs_json,
                    metrics_json=metrics_json,
                    updated_at=db_now,
                    finished_at=func.coalesce(col(JobRow.finished_at), db_now),
                )
                if applied:
                    self._add_event(
                        session=session,
                        task_id=task_id,
                        event_type=f"job.{status.value}",
                        payload={
                            "job_id": job_id,
                            "node_id": node_id,
                            "attempt": next_attempt,
                            "max_retries": max_retries,
                            "error": error_message,
                        },
                        ts=db_now,
                    )
                    if is_critical_role(role):
                        self._register_critical_failure(session, task_id, failure_summary, db_now)
                    if is_high_risk_job(row) and status in {JobStatus.FAILED, JobStatus.TIMEOUT}:
                        self._mark_task_rolled_back(
                            session,
                            task_id,
                            error_message or "release stage failed",
                            "auto_release_failure",
                            db_now,
                        )

            if not applied:
                logger.debug("Result for job %s lost a race, treating as duplicate", job_id)

            self._recompute_task_status(session, task_id, db_now)
            outcome = WorkerResultOutcome(
                job=_to_job_view(self._require_job_row(session, job_id)),
                task=self._hydrate_by_id(session, task_id),
                duplicate=not applied,
            )
            session.commit()
        return outcome

    # -- control actions -----------------------------------------------------

    def control_task(
        self,
        task_id: str,
        action: TaskControlAction | str,
        *,
        requested_by: str | None = "api",
        reason: str | None = None,
    ) -> TaskDetails:
        """Apply an operator action to one task and record the decision."""

        control = _parse_action(TaskControlAction, action, scope="task")
        by = truncate(requested_by, 120) or "api"
        note = truncate(reason, 300)
        db_now = to_db_datetime(utc_now())

        with Session(self.engine) as session:
            row = self._require_task_row(session, task_id)
            status = TaskStatus(row.status)
            audit = {"requested_by": by, "reason": note}

            if control == TaskControlAction.PAUSE:
                if status not in TERMINAL_TASK_STATUSES and status != TaskStatus.PAUSED:
                    self._update_task(
                        session,
                        task_id,
                        status=TaskStatus.PAUSED.value,
                        updated_at=db_now,
                    )
                    self._add_event(session, task_id, "task.paused", audit, db_now)
            elif control == TaskControlAction.RESUME:
                if status == TaskStatus.PAUSED:
                    self._update_task(
                        session,
                        task_id,
                        status=TaskStatus.RUNNING.value,
                        updated_at=db_now,
                    )
                    self._add_event(session, task_id, "task.resumed", audit, db_now)
                    self._recompute_task_status(session, task_id, db_now)
            elif control == TaskControlAction.CANCEL:
                if status not in TERMINAL_TASK_STATUSES:
                    cancel_reason = note or "canceled by control API"
                    self._cancel_outstanding_jobs(session, task_id, cancel_reason, db_now)
                    self._update_task(
                        session,
                        task_id,
                        status=TaskStatus.CANCELED.value,
                        failed_reason=cancel_reason,
                        completed_at=func.coalesce(col(TaskRow.completed_at), db_now),
                        updated_at=db_now,
                    )
                    self._add_event(session, task_id, "task.canceled", audit, db_now)
            elif control == TaskControlAction.EMERGENCY_STOP:
                self._set_emergency_stop(
                    session,
                    active=True,
                    by=by,
                    reason=note or f"requested for task {task_id}",
                    db_now=db_now,
                )
                if status not in TERMINAL_TASK_STATUSES:
                    self._update_task(
                        session,
                        task_id,
                        status=TaskStatus.PAUSED.value,
                        updated_at=db_now,
                    )
                self._add_event(session, task_id, "task.emergency_stop", audit, db_now)
            else:
                self._mark_task_rolled_back(
                    session,
                    task_id,
                    note or "manual force rollback",
                    "manual_force_rollback",
                    db_now,
                )

            self._add_decision(
                session=session,
                task_id=task_id,
                decision="task_control_action",
                reason=control.value,
                evidence=audit,
                ts=db_now,
            )
            details = self._hydrate(session, self._require_task_row(session, task_id))
            session.commit()

        logger.info("Task control: task_id=%s action=%s by=%s", task_id, control.value, by)
        return details

    def control_global(
        self,
        action: GlobalControlAction | str,
        *,
        requested_by: str | None = "api",
        reason: str | None = None,
    ) -> GlobalControlResult:
        control = _parse_action(GlobalControlAction, action, scope="global")
        by = truncate(requested_by, 120) or "api"
        note = truncate(reason, 300)

        if control == GlobalControlAction.EMERGENCY_STOP_CLEAR:
            emergency_stop = self.set_emergency_stop(
                active=False,
                by=by,
                reason=note or "manual clear",
            )
            return GlobalControlResult(
                emergency_stop=emergency_stop,
                circuit_breaker=self.get_circuit(),
            )
        return GlobalControlResult(
            emergency_stop=self.get_emergency_stop(),
            circuit_breaker=self.reset_circuit(note or f"manual reset by {by}"),
        )

    def mark_task_rolled_back(
        self,
        task_id: str,
        reason: str,
        trigger: str = "manual",
    ) -> TaskView:
        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._require_task_row(session, task_id)
            self._mark_task_rolled_back(session, task_id, reason, trigger, db_now)
            view = _to_task_view(self._require_task_row(session, task_id))
            session.commit()
        return view

    # -- global controls -----------------------------------------------------

    def get_emergency_stop(self) -> EmergencyStopView:
        with Session(self.engine) as session:
            return self._emergency_stop(session)

    def set_emergency_stop(
        self,
        active: bool,
        by: str | None = None,
        reason: str | None = None,
    ) -> EmergencyStopView:
        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            value = self._set_emergency_stop(
                session,
                active=active,
                by=by,
                reason=reason,
                db_now=db_now,
            )
            session.commit()
        return value

    def get_circuit(self) -> CircuitBreakerView:
        with Session(self.engine) as session:
            view = _to_circuit_view(self._circuit_row(session))
            session.commit()
        return view

    def reset_circuit(self, reason: str = "manual_reset") -> CircuitBreakerView:
        """Close the breaker and zero its failure count."""

        db_now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._circuit_row(session)
            previous = row.status
            row.status = CircuitStatus.CLOSED.value
            row.failure_count = 0
            row.opened_at = None
            row.reason = truncate(reason, 300)
            row.updated_at = db_now
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_circuit_view(row)
        logger.info("Circuit breaker reset: previous=%s reason=%s", previous, reason)
        return view

    def system_snapshot(self) -> SystemSnapshot:
        with Session(self.engine) as session:
            snapshot = SystemSnapshot(
                emergency_stop=self._emergency_stop(session),
                circuit_breaker=_to_circuit_view(self._circuit_row(session)),
                global_active_jobs=self._global_active_jobs(session),
            )
            session.commit()
        return snapshot

    # -- in-transaction helpers ----------------------------------------------

    def _task_row(self, session: Session, task_id: str) -> TaskRow | None:
        return session.get(TaskRow, task_id, populate_existing=True)

    def _require_task_row(self, session: Session, task_id: str) -> TaskRow:
        row = self._task_row(session, task_id)
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _require_job_row(self, session: Session, job_id: str) -> JobRow:
        row = session.get(JobRow, job_id, populate_existing=True)
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _job_rows(self, session: Session, task_id: str) -> list[JobRow]:
        return list(
            session.exec(
                select(JobRow)
                .where(JobRow.task_id == task_id)
                .order_by(*_JOB_ORDER)
                .execution_options(populate_existing=True),
            ).all(),
        )

    def _update_task(self, session: Session, task_id: str, **values: Any) -> None:
        session.exec(
            sa_update(TaskRow)
            .where(col(TaskRow.task_id) == task_id)
            .values(**values)
            .execution_options(synchronize_session=False),
        )

    def _transition_job(
        self,
        session: Session,
        job_id: str,
        *,
        expected: JobStatus,
        **values: Any,
    ) -> bool:
        """Conditional status change; ``False`` means another writer got there first."""

        result = session.exec(
            sa_update(JobRow)
            .where(col(JobRow.job_id) == job_id, col(JobRow.status) == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1

    def _unblock_ready_jobs(self, session: Session, task_id: str, db_now: datetime) -> int:
        rows = self._job_rows(session, task_id)
        status_by_node = {row.node_id: row.status for row in rows}
        changed = 0
        for row in rows:
            if row.status != JobStatus.BLOCKED.value:
                continue
            depends_on = load_json(row.depends_on_json, [])
            if not all(status_by_node.get(dep) == JobStatus.COMPLETED.value for dep in depends_on):
                continue
            if not self._transition_job(
                session,
                row.job_id,
                expected=JobStatus.BLOCKED,
                status=JobStatus.QUEUED.value,
                next_run_at=db_now,
                updated_at=db_now,
            ):
                continue
            changed += 1
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="job.unblocked",
                payload={"job_id": row.job_id, "node_id": row.node_id, "depends_on": depends_on},
                ts=db_now,
            )
        if changed:
            self._recompute_task_status(session, task_id, db_now)
        return changed

    def _recompute_task_status(  # noqa: C901
        self,
        session: Session,
        task_id: str,
        db_now: datetime,
    ) -> TaskRow | None:
        """Derive task status from its jobs; terminal and paused tasks are left alone."""

        task = self._task_row(session, task_id)
        if task is None:
            return None
        current = TaskStatus(task.status)
        if current in TERMINAL_TASK_STATUSES or current == TaskStatus.PAUSED:
            return task

        jobs = self._job_rows(session, task_id)
        if not jobs:
            return task

        failed_like = {JobStatus.FAILED.value, JobStatus.TIMEOUT.value}
        if any(is_high_risk_job(job) and job.status in failed_like for job in jobs):
            self._mark_task_rolled_back(
                session,
                task_id,
                "release stage failed",
                "auto_release_failure",
                db_now,
            )
            return self._task_row(session, task_id)

        hard_fail = next(
            (job for job in jobs if job.status in failed_like | {JobStatus.CANCELED.value}),
            None,
        )
        if hard_fail is not None:
            self._update_task(
                session,
                task_id,
                status=TaskStatus.FAILED.value,
                failed_reason=hard_fail.last_error or f"{hard_fail.node_id} {hard_fail.status}",
                completed_at=func.coalesce(col(TaskRow.completed_at), db_now),
                updated_at=db_now,
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="task.failed",
                payload={
                    "reason": hard_fail.last_error,
                    "node_id": hard_fail.node_id,
                    "status": hard_fail.status,
                },
                ts=db_now,
            )
            return self._task_row(session, task_id)

        if all(job.status == JobStatus.COMPLETED.value for job in jobs):
            self._update_task(
                session,
                task_id,
                status=TaskStatus.DONE.value,
                completed_at=func.coalesce(col(TaskRow.completed_at), db_now),
                updated_at=db_now,
            )
            self._add_event(session, task_id, "task.done", None, db_now)
            return self._task_row(session, task_id)

        outstanding = {s.value for s in OUTSTANDING_JOB_STATUSES}
        active_roles = {job.role.lower() for job in jobs if job.status in outstanding}
        next_status = TaskStatus.RUNNING
        if "release" in active_roles:
            next_status = TaskStatus.RELEASING
        elif "reviewer" in active_roles:
            next_status = TaskStatus.REVIEWING

        if next_status != current:
            self._update_task(session, task_id, status=next_status.value, updated_at=db_now)
            self._add_event(
                session,
                task_id,
                "task.phase_changed",
                {"status": next_status.value, "previous": current.value},
                db_now,
            )
        return self._task_row(session, task_id)

    def _cancel_outstanding_jobs(
        self,
        session: Session,
        task_id: str,
        reason: str,
        db_now: datetime,
    ) -> int:
        result = session.exec(
            sa_update(JobRow)
            .where(
                col(JobRow.task_id) == task_id,
                col(JobRow.status).in_([s.value for s in OUTSTANDING_JOB_STATUSES]),
            )
            .values(
                status=JobStatus.CANCELED.value,
                last_error=(reason or "canceled")[:500],
                finished_at=func.coalesce(col(JobRow.finished_at), db_now),
                updated_at=db_now,
            )
            .execution_options(synchronize_session=False),
        )
        return int(result.rowcount or 0)

    def _mark_task_rolled_back(
        self,
        session: Session,
        task_id: str,
        reason: str,
        trigger: str,
        db_now: datetime,
    ) -> None:
        task = self._task_row(session, task_id)
        if task is None or task.status == TaskStatus.ROLLED_BACK.value:
            return

        reason = (reason or "rollback")[:500]
        canceled = self._cancel_outstanding_jobs(session, task_id, f"rolled back: {reason}", db_now)
        self._update_task(
            session,
            task_id,
            status=TaskStatus.ROLLED_BACK.value,
            degraded=True,
            failed_reason=reason,
            completed_at=func.coalesce(col(TaskRow.completed_at), db_now),
            updated_at=db_now,
        )
        session.add(
            RollbackRecordRow(
                task_id=task_id,
                reason=reason,
                from_version=None,
                to_version=None,
                status="completed",
                ts=db_now,
            ),
        )
        self._add_event(
            session,
            task_id,
            "task.rolled_back",
            {"reason": reason, "trigger": trigger, "canceled_jobs": canceled},
            db_now,
        )
        self._add_decision(
            session=session,
            task_id=task_id,
            decision="auto_rollback",
            reason=reason,
            evidence={"trigger": trigger, "rollback": rollback_descriptor(_to_task_view(task), reason)},
            ts=db_now,
        )
        logger.info(
            "Task rolled back: task_id=%s trigger=%s canceled_jobs=%d reason=%s",
            task_id,
            trigger,
            canceled,
            reason,
        )

    def _circuit_row(self, session: Session) -> CircuitBreakerRow:
        row = session.get(CircuitBreakerRow, GLOBAL_SCOPE, populate_existing=True)
        if row is None:
            row = CircuitBreakerRow(
                scope=GLOBAL_SCOPE,
                status=CircuitStatus.CLOSED.value,
                failure_count=0,
                threshold=self.circuit_threshold,
                updated_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.flush()
        return row

    def _register_critical_failure(
        self,
        session: Session,
        task_id: str,
        reason: str,
        db_now: datetime,
    ) -> None:
        row = self._circuit_row(session)
        row.reason = reason[:300]
        row.updated_at = db_now
        if row.status == CircuitStatus.OPEN.value:
            session.add(row)
            return

        failures = row.failure_count + 1
        threshold = row.threshold or self.circuit_threshold
        row.failure_count = failures
        if failures >= threshold:
            row.status = CircuitStatus.OPEN.value
            row.opened_at = db_now
            self._add_decision(
                session=session,
                task_id=task_id,
                decision="open_circuit_breaker",
                reason=reason,
                evidence={"threshold": threshold, "failures": failures},
                ts=db_now,
            )
            logger.warning(
                "Circuit breaker opened: failures=%d threshold=%d task_id=%s",
                failures,
                threshold,
                task_id,
            )
        session.add(row)

    def _register_critical_success(self, session: Session, db_now: datetime) -> None:
        row = self._circuit_row(session)
        if row.status != CircuitStatus.CLOSED.value or row.failure_count == 0:
            return
        row.failure_count = 0
        row.reason = None
        row.updated_at = db_now
        session.add(row)

    def _emergency_stop(self, session: Session) -> EmergencyStopView:
        row = session.get(SystemControlRow, EMERGENCY_STOP_KEY, populate_existing=True)
        if row is None:
            return EmergencyStopView()
        return _to_emergency_stop_view(load_json(row.value_json, {}))

    def _set_emergency_stop(
        self,
        session: Session,
        *,
        active: bool,
        by: str | None,
        reason: str | None,
        db_now: datetime,
    ) -> EmergencyStopView:
        value = EmergencyStopView(
            active=bool(active),
            by=truncate(by, 120),
            reason=truncate(reason, 300),
            at=to_utc_aware_datetime(db_now),
        )
        row = session.get(SystemControlRow, EMERGENCY_STOP_KEY)
        if row is None:
            row = SystemControlRow(key=EMERGENCY_STOP_KEY, value_json="{}", updated_at=db_now)
        row.value_json = _emergency_stop_json(value)
        row.updated_at = db_now
        session.add(row)
        logger.info(
            "Emergency stop %s by=%s reason=%s",
            "activated" if value.active else "cleared",
            value.by,
            value.reason,
        )
        return value

    def _global_active_jobs(self, session: Session) -> int:
        return int(
            session.exec(
                select(func.count())
                .select_from(JobRow)
                .where(col(JobRow.status).in_([s.value for s in IN_FLIGHT_JOB_STATUSES])),
            ).one(),
        )

    def _in_flight_counts_by_task(self, session: Session, task_ids: set[str]) -> dict[str, int]:
        rows = session.exec(
            select(JobRow.task_id, func.count())
            .where(
                col(JobRow.status).in_([s.value for s in IN_FLIGHT_JOB_STATUSES]),
                col(JobRow.task_id).in_(task_ids),
            )
            .group_by(JobRow.task_id),
        ).all()
        return {task_id: int(count) for task_id, count in rows}

    def _hydrate_by_id(self, session: Session, task_id: str) -> TaskDetails | None:
        row = self._task_row(session, task_id)
        return self._hydrate(session, row) if row is not None else None

    def _hydrate(self, session: Session, row: TaskRow) -> TaskDetails:
        task_id = row.task_id
        plan_row = session.get(TaskPlanRow, task_id, populate_existing=True)
        jobs = [_to_job_view(job) for job in self._job_rows(session, task_id)]

        events = session.exec(
            select(TaskEventRow)
            .where(TaskEventRow.task_id == task_id)
            .order_by(col(TaskEventRow.id).desc())
            .limit(EVENTS_PER_TASK),
        ).all()
        decisions = session.exec(
            select(DecisionRecordRow)
            .where(DecisionRecordRow.task_id == task_id)
            .order_by(col(DecisionRecordRow.id).desc())
            .limit(DECISIONS_PER_TASK),
        ).all()
        rollbacks = session.exec(
            select(RollbackRecordRow)
            .where(RollbackRecordRow.task_id == task_id)
            .order_by(col(RollbackRecordRow.id).desc())
            .limit(ROLLBACKS_PER_TASK),
        ).all()

        progress = DagProgress()
        for job in jobs:
            _bump_progress(progress, job.status.value, 1)

        return TaskDetails(
            task=_to_task_view(row),
            execution_plan=load_json(plan_row.plan_json, None) if plan_row is not None else None,
            dag_progress=progress,
            jobs=jobs,
            events=[_to_event_view(event) for event in reversed(events)],
            decisions=[_to_decision_view(decision) for decision in reversed(decisions)],
            rollbacks=[_to_rollback_view(rollback) for rollback in reversed(rollbacks)],
            controls=ControlsView(
                emergency_stop=self._emergency_stop(session),
                circuit_breaker=_to_circuit_view(self._circuit_row(session)),
            ),
        )

    def _add_event(
        self,
        session: Session,
        task_id: str,
        event_type: str,
        payload: dict[str, Any] | None,
        ts: datetime,
    ) -> None:
        session.add(
            TaskEventRow(
                task_id=task_id,
                event_type=event_type,
                payload_json=dump_json(payload),
                ts=ts,
            ),
        )

    def _add_decision(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        decision: str,
        reason: str,
        evidence: dict[str, Any] | None,
        ts: datetime,
    ) -> None:
        session.add(
            DecisionRecordRow(
                task_id=task_id,
                decision=str(decision or "")[:120],
                reason=str(reason or "")[:500],
                evidence_json=dump_json(evidence),
                ts=ts,
            ),
        )


def _parse_action(enum_type: type[Any], action: object, *, scope: str) -> Any:
    if isinstance(action, enum_type):
        return action
    try:
        return enum_type(str(action or "").strip().lower())
    except ValueError as error:
        raise UnsupportedActionError(str(action), scope=scope) from error


def _worker_result_mapping(result: WorkerResult | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(result, WorkerResult):
        return {
            "job_id": result.job_id,
            "status": result.status,
            "worker_id": result.worker_id,
            "error": result.error,
            "artifacts": result.artifacts,
            "logs": result.logs,
            "metrics": result.metrics,
        }
    return result or {}


def _job_row_for_node(*, task_id: str, node: Mapping[str, Any], db_now: datetime) -> JobRow:
    raw_depends_on = node.get("depends_on")
    depends_on = [str(dep) for dep in raw_depends_on] if isinstance(raw_depends_on, list) else []
    status = JobStatus.BLOCKED if depends_on else JobStatus.QUEUED
    payload = node.get("payload")
    return JobRow(
        job_id=random_id("job"),
        task_id=task_id,
        node_id=str(node.get("node_id")),
        role=str(node.get("role")),
        payload_json=dump_json(payload if isinstance(payload, dict) else {}) or "{}",
        timeout_s=clamp_int(node.get("timeout_s"), 30, 12 * 3600, 1800),
        max_retries=clamp_int(node.get("max_retries"), 0, 8, 1),
        attempt=0,
        status=status.value,
        worker_id=None,
        depends_on_json=dump_json(depends_on) or "[]",
        next_run_at=db_now if status == JobStatus.QUEUED else None,
        created_at=db_now,
        updated_at=db_now,
    )


def _bump_progress(progress: DagProgress, status: str, count: int) -> None:
    progress.total += count
    if status in DagProgress.__slots__ and status != "total":
        setattr(progress, status, getattr(progress, status) + count)


def _emergency_stop_json(value: EmergencyStopView) -> str:
    return (
        dump_json(
            {
                "active": value.active,
                "by": value.by,
                "reason": value.reason,
                "at": value.at.isoformat() if value.at is not None else None,
            },
        )
        or "{}"
    )


def _to_emergency_stop_view(data: Mapping[str, Any]) -> EmergencyStopView:
    at = data.get("at")
    return EmergencyStopView(
        active=bool(data.get("active")),
        by=data.get("by"),
        reason=data.get("reason"),
        at=to_utc_aware_datetime(datetime.fromisoformat(at)) if at else None,
    )


def _to_task_view(row: TaskRow) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        goal=row.goal,
        repo=row.repo,
        branch=row.branch,
        acceptance_criteria=load_json(row.acceptance_criteria_json, []),
        priority=normalize_priority(row.priority),
        risk_profile=normalize_risk_profile(row.risk_profile),
        status=TaskStatus(row.status),
        parallelism_limit=row.parallelism_limit,
        metadata=load_json(row.metadata_json, {}),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        failed_reason=row.failed_reason,
        degraded=bool(row.degraded),
    )


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        task_id=row.task_id,
        node_id=row.node_id,
        role=row.role,
        payload=load_json(row.payload_json, {}),
        timeout_s=row.timeout_s,
        max_retries=row.max_retries,
        attempt=row.attempt,
        status=JobStatus(row.status),
        worker_id=row.worker_id,
        depends_on=load_json(row.depends_on_json, []),
        next_run_at=optional_utc(row.next_run_at),
        last_error=row.last_error,
        artifacts=load_json(row.artifacts_json, None),
        logs=load_json(row.logs_json, None),
        metrics=load_json(row.metrics_json, None),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
    )


def _to_event_view(row: TaskEventRow) -> TaskEventView:
    return TaskEventView(
        id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        payload=load_json(row.payload_json, None),
        ts=to_utc_aware_datetime(row.ts),
    )


def _to_decision_view(row: DecisionRecordRow) -> DecisionView:
    return DecisionView(
        id=row.id or 0,
        task_id=row.task_id,
        decision=row.decision,
        reason=row.reason,
        evidence=load_json(row.evidence_json, None),
        ts=to_utc_aware_datetime(row.ts),
    )


def _to_rollback_view(row: RollbackRecordRow) -> RollbackView:
    return RollbackView(
        id=row.id or 0,
        task_id=row.task_id,
        reason=row.reason,
        from_version=row.from_version,
        to_version=row.to_version,
        status=row.status,
        ts=to_utc_aware_datetime(row.ts),
    )


def _to_circuit_view(row: CircuitBreakerRow) -> CircuitBreakerView:
    return CircuitBreakerView(
        scope=row.scope,
        status=CircuitStatus(row.status),
        failure_count=row.failure_count,
        threshold=row.threshold,
        opened_at=optional_utc(row.opened_at),
        reason=row.reason,
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
