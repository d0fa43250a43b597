from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from agent_control_plane.control_plane.errors import (
    ControlPlaneValidationError,
    JobNotFoundError,
    JobOwnershipError,
    TaskNotFoundError,
    UnsupportedActionError,
)
from agent_control_plane.control_plane.models import (
    CircuitStatus,
    JobStatus,
    Priority,
    RiskProfile,
    TaskCreate,
    TaskStatus,
    WorkerResult,
)
from agent_control_plane.control_plane.planner import build_execution_plan
from agent_control_plane.control_plane.repository import ControlPlaneRepository

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Task State Machine"),
]


def _flat_plan(*roles: str, parallelism_limit: int = 8, max_retries: int = 0) -> dict:
    """Plan whose nodes have no dependencies, so every job starts queued."""

    return {
        "parallelism_limit": parallelism_limit,
        "nodes": [
            {
                "node_id": f"{role}-{index}",
                "role": role,
                "timeout_s": 60,
                "max_retries": max_retries,
                "depends_on": [],
                "payload": {"index": index},
            }
            for index, role in enumerate(roles)
        ],
        "edges": [],
    }


def _create(repository: ControlPlaneRepository, **overrides) -> str:
    spec = {"goal": "Do work", "repo": "/repo/path", "branch": "main", **overrides}
    return repository.create_task(spec).task_id


def _run_one(
    repository: ControlPlaneRepository,
    task_id: str,
    result_status: str = "completed",
    worker_id: str = "worker_a",
):
    dispatchable = repository.get_dispatchable_jobs(10)
    assert dispatchable
    target = dispatchable[0]

    assert repository.dispatch_jobs([target.job_id], "test_dispatcher") == 1
    claimed = repository.claim_dispatched_jobs(worker_id, 1)
    assert [job.job_id for job in claimed] == [target.job_id]

    outcome = repository.apply_worker_result(
        WorkerResult(
            job_id=claimed[0].job_id,
            status=result_status,
            worker_id=worker_id,
            logs=[{"line": f"{claimed[0].node_id}:{result_status}"}],
        ),
    )
    repository.unblock_ready_jobs(task_id)
    return outcome


def test_planning_dispatch_result_and_auto_rollback_on_release_failure(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    task_id = planned_task.task_id
    assert planned_task.status == TaskStatus.RUNNING
    assert planned_task.dag_progress.queued == 1
    assert planned_task.dag_progress.blocked == 3
    assert planned_task.task.started_at is not None

    _run_one(repository, task_id)  # coding
    _run_one(repository, task_id)  # testing
    _run_one(repository, task_id)  # reviewing

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.RELEASING

    release = _run_one(repository, task_id, "failed")
    assert release.job.status == JobStatus.QUEUED
    assert release.job.attempt == 1
    assert release.job.worker_id == "worker_a"
    assert release.job.next_run_at is not None
    assert release.job.next_run_at > datetime.now(tz=UTC) + timedelta(seconds=2)

    final = repository.apply_worker_result(
        {
            "worker_id": "worker_a",
            "job_id": release.job.job_id,
            "status": "failed",
            "logs": [{"line": "release:failed-final"}],
        },
    )

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.ROLLED_BACK
    assert task.task.degraded is True
    assert task.task.completed_at is not None
    assert len(task.rollbacks) == 1
    assert task.rollbacks[0].status == "completed"
    assert final.task is not None
    assert final.task.status == TaskStatus.ROLLED_BACK
    assert final.job.status == JobStatus.FAILED
    assert final.job.attempt == 2

    decisions = [decision.decision for decision in task.decisions]
    assert decisions[0] == "plan_created"
    assert "auto_rollback" in decisions
    rollback_decision = next(d for d in task.decisions if d.decision == "auto_rollback")
    assert rollback_decision.evidence["trigger"] == "auto_release_failure"
    assert rollback_decision.evidence["rollback"]["mode"] == "auto"

    events = [event.event_type for event in task.events]
    assert events[0] == "task.created"
    assert "job.retry_scheduled" in events
    assert events[-1] == "task.rolled_back"

    circuit = repository.get_circuit()
    assert circuit.status == CircuitStatus.CLOSED
    assert circuit.failure_count == 1


def test_completed_pipeline_marks_task_done(repository: ControlPlaneRepository, planned_task) -> None:
    task_id = planned_task.task_id
    for _ in range(4):
        _run_one(repository, task_id)

    task = repository.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.DONE
    assert task.dag_progress.completed == 4
    assert task.dag_progress.total == 4
    assert task.task.completed_at is not None
    assert [job.status for job in task.jobs] == [JobStatus.COMPLETED] * 4
    assert task.jobs[0].logs == [{"line": "coding:completed"}]
    assert "task.done" in [event.event_type for event in task.events]


def test_emergency_stop_blocks_new_dispatch_and_claims(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    before = repository.get_dispatchable_jobs(10)
    assert len(before) == 1
    assert repository.dispatch_jobs([before[0].job_id]) == 1

    stop = repository.set_emergency_stop(True, "test", "halt all")
    assert stop.active is True
    assert stop.by == "test"
    assert stop.at is not None

    assert repository.get_dispatchable_jobs(10) == []
    assert repository.claim_dispatched_jobs("worker_a") == []
    assert repository.system_snapshot().emergency_stop.active is True

    repository.set_emergency_stop(False, "test", "resume")
    claimed = repository.claim_dispatched_jobs("worker_a")
    assert [job.job_id for job in claimed] == [before[0].job_id]


def test_create_task_validates_and_normalizes(repository: ControlPlaneRepository) -> None:
    with pytest.raises(ControlPlaneValidationError, match="goal is required"):
        repository.create_task({"goal": "  ", "repo": "r"})
    with pytest.raises(ControlPlaneValidationError, match="repo is required"):
        repository.create_task(TaskCreate(goal="g", repo=""))

    details = repository.create_task(
        {
            "goal": "  Ship it  ",
            "repo": "acme/repo",
            "acceptance_criteria": [" tests pass ", "", None, *[f"c{i}" for i in range(80)]],
            "priority": "p2",
            "risk_profile": "weird",
            "parallelism_limit": 99,
            "rollback_available": "false",
            "requested_by": "x" * 300,
        },
    )
    task = details.task
    assert task.task_id.startswith("task_")
    assert task.goal == "Ship it"
    assert task.branch == "main"
    assert task.status == TaskStatus.QUEUED
    assert task.priority == Priority.P2
    assert task.risk_profile == RiskProfile.MEDIUM
    assert task.parallelism_limit == 10
    assert task.acceptance_criteria[0] == "tests pass"
    assert len(task.acceptance_criteria) == 58
    assert task.metadata["rollback_available"] is False
    assert task.metadata["source"] == "api"
    assert len(task.metadata["requested_by"]) == 120
    assert details.execution_plan is None
    assert details.jobs == []
    assert [event.event_type for event in details.events] == ["task.created"]


def test_create_task_uses_default_parallelism(tmp_path: Path) -> None:
    repository = ControlPlaneRepository(tmp_path / "cp.db", default_task_parallelism=3)
    repository.init_schema()
    try:
        assert repository.create_task({"goal": "g", "repo": "r"}).task.parallelism_limit == 3
        explicit = repository.create_task({"goal": "g", "repo": "r"}, default_parallelism=5)
        assert explicit.task.parallelism_limit == 5
    finally:
        repository.close()


def test_attach_plan_validation(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository)
    with pytest.raises(ControlPlaneValidationError, match="must include nodes"):
        repository.attach_plan(task_id, {"nodes": []})
    with pytest.raises(TaskNotFoundError):
        repository.attach_plan("task_missing", _flat_plan("coder"))


def test_reattaching_plan_does_not_duplicate_jobs(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    plan = build_execution_plan(planned_task, parallelism_limit=4)
    plan.parallelism_limit = 4
    details = repository.attach_plan(planned_task.task_id, plan, "replan")

    assert len(details.jobs) == 4
    assert details.task.parallelism_limit == 4
    assert details.execution_plan is not None
    assert details.execution_plan["parallelism_limit"] == 4
    assert details.task.started_at == planned_task.task.started_at
    assert [d.reason for d in details.decisions] == ["unit_test_plan", "replan"]


def test_job_fields_from_plan_are_clamped(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository)
    plan = _flat_plan("coder", "tester")
    plan["nodes"][0]["timeout_s"] = 5
    plan["nodes"][0]["max_retries"] = 40
    plan["nodes"][1]["timeout_s"] = None
    plan["nodes"][1]["max_retries"] = "bad"
    details = repository.attach_plan(task_id, plan)

    first, second = details.jobs
    assert (first.timeout_s, first.max_retries) == (30, 8)
    assert (second.timeout_s, second.max_retries) == (1800, 1)
    assert first.job_id.startswith("job_")
    assert first.payload == {"index": 0}
    assert first.next_run_at is not None


def test_unblock_is_idempotent(repository: ControlPlaneRepository, planned_task) -> None:
    task_id = planned_task.task_id
    assert repository.unblock_ready_jobs(task_id) == 0

    coding = repository.get_dispatchable_jobs(10)[0]
    repository.dispatch_jobs([coding.job_id])
    repository.claim_dispatched_jobs("worker_a")
    repository.apply_worker_result({"job_id": coding.job_id, "status": "ok", "worker_id": "worker_a"})

    assert repository.unblock_ready_jobs(task_id) == 1
    assert repository.unblock_ready_jobs(task_id) == 0

    task = repository.get_task(task_id)
    assert task is not None
    assert task.dag_progress.completed == 1
    assert task.dag_progress.queued == 1
    assert task.dag_progress.blocked == 2
    unblocked = [e for e in task.events if e.event_type == "job.unblocked"]
    assert len(unblocked) == 1
    assert unblocked[0].payload["node_id"] == "testing"


def test_dispatch_skips_jobs_that_are_no_longer_queued(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    assert repository.dispatch_jobs([job.job_id, job.job_id, "job_unknown", ""]) == 1
    assert repository.dispatch_jobs([job.job_id]) == 0
    assert repository.dispatch_jobs([]) == 0


def test_per_task_parallelism_cap(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository)
    repository.attach_plan(task_id, _flat_plan(*["coder"] * 5, parallelism_limit=2))

    first = repository.get_dispatchable_jobs(10)
    assert len(first) == 2
    assert repository.dispatch_jobs([job.job_id for job in first]) == 2
    assert repository.get_dispatchable_jobs(10) == []

    claimed = repository.claim_dispatched_jobs("worker_a", 5)
    assert len(claimed) == 2
    repository.apply_worker_result({"job_id": claimed[0].job_id, "status": "completed"})
    assert len(repository.get_dispatchable_jobs(10)) == 1


def test_global_parallelism_cap(tmp_path: Path) -> None:
    repository = ControlPlaneRepository(tmp_path / "cp.db", global_parallelism=3)
    repository.init_schema()
    try:
        for _ in range(2):
            task_id = _create(repository)
            repository.attach_plan(task_id, _flat_plan(*["coder"] * 4, parallelism_limit=10))

        selected = repository.get_dispatchable_jobs(50)
        assert len(selected) == 3
        assert repository.dispatch_jobs([job.job_id for job in selected]) == 3
        assert repository.get_dispatchable_jobs(50) == []
        assert repository.system_snapshot().global_active_jobs == 3
    finally:
        repository.close()


def test_dispatch_takes_oldest_jobs_first(repository: ControlPlaneRepository) -> None:
    first_task = _create(repository)
    repository.attach_plan(first_task, _flat_plan("coder", "tester"))
    second_task = _create(repository)
    repository.attach_plan(second_task, _flat_plan("coder"))

    selected = repository.get_dispatchable_jobs(10)
    assert [job.task_id for job in selected] == [first_task, first_task, second_task]
    assert [job.node_id for job in selected] == ["coder-0", "tester-1", "coder-0"]
    assert len(repository.get_dispatchable_jobs(1)) == 1


def test_release_job_requires_rollback_path(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository, rollback_available=False)
    repository.attach_plan(task_id, _flat_plan("release", "coder"))

    selected = repository.get_dispatchable_jobs(10)
    assert [job.role for job in selected] == ["coder"]


def test_open_circuit_blocks_release_but_not_other_roles(tmp_path: Path) -> None:
    repository = ControlPlaneRepository(tmp_path / "cp.db", circuit_threshold=2)
    repository.init_schema()
    try:
        for index in range(2):
            task_id = _create(repository)
            repository.attach_plan(task_id, _flat_plan("reviewer"))
            job = repository.get_dispatchable_jobs(10)[0]
            repository.dispatch_jobs([job.job_id])
            repository.claim_dispatched_jobs("worker_a")
            outcome = repository.apply_worker_result(
                {"job_id": job.job_id, "status": "failed", "error": f"review {index} failed"},
            )
            assert outcome.task is not None
            assert outcome.task.status == TaskStatus.FAILED
            assert outcome.task.task.failed_reason == f"review {index} failed"

        circuit = repository.get_circuit()
        assert circuit.is_open
        assert circuit.failure_count == 2
        assert circuit.opened_at is not None
        assert circuit.reason == "review 1 failed"
        assert repository.get_task(task_id).decisions[-1].decision == "open_circuit_breaker"

        gated = _create(repository)
        repository.attach_plan(gated, _flat_plan("release", "coder"))
        assert [job.role for job in repository.get_dispatchable_jobs(10)] == ["coder"]

        result = repository.control_global("circuit_reset", requested_by="ops")
        assert result.circuit_breaker.status == CircuitStatus.CLOSED
        assert result.circuit_breaker.failure_count == 0
        assert result.circuit_breaker.opened_at is None
        assert {job.role for job in repository.get_dispatchable_jobs(10)} == {"release", "coder"}
    finally:
        repository.close()


def test_critical_success_resets_failure_count(repository: ControlPlaneRepository) -> None:
    failing = _create(repository)
    repository.attach_plan(failing, _flat_plan("reviewer"))
    job = repository.get_dispatchable_jobs(10)[0]
    repository.apply_worker_result({"job_id": job.job_id, "status": "timeout"})
    assert repository.get_circuit().failure_count == 1

    passing = _create(repository)
    repository.attach_plan(passing, _flat_plan("reviewer"))
    job = repository.get_dispatchable_jobs(10)[0]
    repository.apply_worker_result({"job_id": job.job_id, "status": "completed"})

    circuit = repository.get_circuit()
    assert circuit.failure_count == 0
    assert circuit.reason is None


def test_open_circuit_stays_open_after_critical_success(tmp_path: Path) -> None:
    repository = ControlPlaneRepository(tmp_path / "cp.db", circuit_threshold=1)
    repository.init_schema()
    try:
        failing = _create(repository)
        repository.attach_plan(failing, _flat_plan("reviewer"))
        job = repository.get_dispatchable_jobs(10)[0]
        repository.apply_worker_result(
            {"job_id": job.job_id, "status": "failed", "error": "review rejected"},
        )
        opened = repository.get_circuit()
        assert opened.is_open
        assert opened.failure_count == 1

        passing = _create(repository)
        repository.attach_plan(passing, _flat_plan("reviewer"))
        job = repository.get_dispatchable_jobs(10)[0]
        outcome = repository.apply_worker_result({"job_id": job.job_id, "status": "completed"})
        assert outcome.job.status == JobStatus.COMPLETED

        circuit = repository.get_circuit()
        assert circuit.is_open
        assert circuit.failure_count == 1
        assert circuit.opened_at == opened.opened_at
        assert circuit.reason == "review rejected"
    finally:
        repository.close()


def test_non_critical_failures_do_not_touch_circuit(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository)
    repository.attach_plan(task_id, _flat_plan("coder"))
    job = repository.get_dispatchable_jobs(10)[0]
    outcome = repository.apply_worker_result({"job_id": job.job_id, "status": "error"})

    assert outcome.job.status == JobStatus.FAILED
    assert outcome.job.last_error == "coder-0 failed"
    assert repository.get_circuit().failure_count == 0


def test_ownership_conflict_is_rejected(repository: ControlPlaneRepository, planned_task) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    repository.dispatch_jobs([job.job_id])
    repository.claim_dispatched_jobs("worker_a")

    with pytest.raises(JobOwnershipError) as error:
        repository.apply_worker_result(
            WorkerResult(job_id=job.job_id, status="completed", worker_id="worker_b"),
        )
    assert error.value.code == "job_owned_by_other_worker"
    assert error.value.owner == "worker_a"

    task = repository.get_task(planned_task.task_id)
    assert task is not None
    assert task.jobs[0].status == JobStatus.RUNNING
    assert task.jobs[0].worker_id == "worker_a"


def test_retried_job_stays_pinned_to_its_owner(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    repository.dispatch_jobs([job.job_id])
    repository.claim_dispatched_jobs("worker_a")
    retry = repository.apply_worker_result(
        {"job_id": job.job_id, "status": "failed", "worker_id": "worker_a", "error": "flaky"},
    )
    assert retry.job.status == JobStatus.QUEUED
    assert retry.job.last_error == "flaky"

    # Retry backoff keeps the job out of dispatch until it is due.
    assert repository.get_dispatchable_jobs(10) == []
    assert repository.dispatch_jobs([job.job_id]) == 1
    assert repository.claim_dispatched_jobs("worker_b") == []

    claimed = repository.claim_dispatched_jobs("worker_a")
    assert [item.job_id for item in claimed] == [job.job_id]
    assert claimed[0].attempt == 1


def test_duplicate_result_is_a_no_op(repository: ControlPlaneRepository, planned_task) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    repository.dispatch_jobs([job.job_id])
    repository.claim_dispatched_jobs("worker_a")

    result = {
        "job_id": job.job_id,
        "status": "completed",
        "worker_id": "worker_a",
        "artifacts": {"pr": 17},
        "metrics": {"tokens": 12},
    }
    first = repository.apply_worker_result(result)
    events_after_first = len(first.task.events)
    second = repository.apply_worker_result({**result, "status": "failed", "worker_id": "worker_z"})

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.job.status == JobStatus.COMPLETED
    assert second.job.artifacts == {"pr": 17}
    assert second.job.metrics == {"tokens": 12}
    assert len(second.task.events) == events_after_first


def test_apply_worker_result_validation(repository: ControlPlaneRepository) -> None:
    with pytest.raises(ControlPlaneValidationError, match="job_id is required"):
        repository.apply_worker_result({"status": "completed"})
    with pytest.raises(JobNotFoundError):
        repository.apply_worker_result({"job_id": "job_missing", "status": "completed"})
    with pytest.raises(ControlPlaneValidationError, match="worker_id is required"):
        repository.claim_dispatched_jobs("   ")


def test_canceled_result_fails_task(repository: ControlPlaneRepository, planned_task) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    outcome = repository.apply_worker_result({"job_id": job.job_id, "status": "aborted"})

    assert outcome.job.status == JobStatus.CANCELED
    assert outcome.task is not None
    assert outcome.task.status == TaskStatus.FAILED
    assert outcome.task.task.failed_reason == "coding canceled"


def test_claim_sets_running_and_phase(repository: ControlPlaneRepository, planned_task) -> None:
    job = repository.get_dispatchable_jobs(10)[0]
    repository.dispatch_jobs([job.job_id])
    claimed = repository.claim_dispatched_jobs("worker_a", 99)

    assert len(claimed) == 1
    assert claimed[0].status == JobStatus.RUNNING
    assert claimed[0].worker_id == "worker_a"
    assert claimed[0].started_at is not None
    assert repository.claim_dispatched_jobs("worker_a") == []


def test_pause_resume_and_cancel(repository: ControlPlaneRepository, planned_task) -> None:
    task_id = planned_task.task_id

    paused = repository.control_task(task_id, "pause", requested_by="ops", reason="maintenance")
    assert paused.status == TaskStatus.PAUSED
    assert repository.get_dispatchable_jobs(10) == []

    resumed = repository.control_task(task_id, "RESUME")
    # The blocked release job counts as active work.
    assert resumed.status == TaskStatus.RELEASING
    assert len(repository.get_dispatchable_jobs(10)) == 1

    canceled = repository.control_task(task_id, "cancel", reason="no longer needed")
    assert canceled.status == TaskStatus.CANCELED
    assert canceled.task.failed_reason == "no longer needed"
    assert {job.status for job in canceled.jobs} == {JobStatus.CANCELED}

    again = repository.control_task(task_id, "pause")
    assert again.status == TaskStatus.CANCELED

    control_decisions = [d for d in again.decisions if d.decision == "task_control_action"]
    assert [d.reason for d in control_decisions] == ["pause", "resume", "cancel", "pause"]
    assert control_decisions[0].evidence == {"requested_by": "ops", "reason": "maintenance"}


def test_emergency_stop_action_pauses_task_and_global_clear(
    repository: ControlPlaneRepository,
    planned_task,
) -> None:
    details = repository.control_task(planned_task.task_id, "emergency_stop", requested_by="ops")

    assert details.status == TaskStatus.PAUSED
    assert details.controls.emergency_stop.active is True
    assert details.controls.emergency_stop.by == "ops"

    result = repository.control_global("emergency_stop_clear", requested_by="ops")
    assert result.emergency_stop.active is False
    assert result.emergency_stop.reason == "manual clear"
    assert repository.get_emergency_stop().active is False


def test_force_rollback(repository: ControlPlaneRepository, planned_task) -> None:
    details = repository.control_task(planned_task.task_id, "force_rollback", reason="bad deploy")

    assert details.status == TaskStatus.ROLLED_BACK
    assert details.task.degraded is True
    assert details.task.failed_reason == "bad deploy"
    assert {job.status for job in details.jobs} == {JobStatus.CANCELED}
    assert all(job.last_error == "rolled back: bad deploy" for job in details.jobs)
    rollback = next(d for d in details.decisions if d.decision == "auto_rollback")
    assert rollback.evidence["trigger"] == "manual_force_rollback"

    # A second rollback is a no-op.
    view = repository.mark_task_rolled_back(planned_task.task_id, "again")
    assert view.failed_reason == "bad deploy"
    assert len(repository.get_task(planned_task.task_id).rollbacks) == 1


def test_unsupported_actions(repository: ControlPlaneRepository, planned_task) -> None:
    with pytest.raises(UnsupportedActionError, match="^unsupported_action$"):
        repository.control_task(planned_task.task_id, "explode")
    with pytest.raises(UnsupportedActionError, match="^unsupported_global_action$"):
        repository.control_global("explode")
    with pytest.raises(TaskNotFoundError):
        repository.control_task("task_missing", "pause")


def test_listing_and_planning_candidates(repository: ControlPlaneRepository) -> None:
    first = _create(repository)
    second = _create(repository)
    third = _create(repository)
    repository.attach_plan(second, _flat_plan("coder"))

    assert {task.task_id for task in repository.list_tasks()} == {first, second, third}
    assert len(repository.list_tasks(0)) == 1
    assert [task.task_id for task in repository.list_planning_candidates(10)] == [first, third]
    assert repository.get_task("task_missing") is None

    progress = repository.dag_progress_for_tasks([first, second])
    assert progress[first].total == 0
    assert progress[second].queued == 1
    assert repository.dag_progress_for_tasks([]) == {}


def test_recompute_reports_phase(repository: ControlPlaneRepository) -> None:
    task_id = _create(repository)
    repository.attach_plan(task_id, _flat_plan("coder", "reviewer"))

    view = repository.recompute_task_status(task_id)
    assert view is not None
    assert view.status == TaskStatus.REVIEWING
    assert repository.recompute_task_status("task_missing") is None


def test_schema_init_is_idempotent(repository: ControlPlaneRepository) -> None:
    repository.set_emergency_stop(True, "ops", "hold")
    repository.init_schema()

    assert repository.get_emergency_stop().active is True
    assert repository.get_circuit().threshold == 3
