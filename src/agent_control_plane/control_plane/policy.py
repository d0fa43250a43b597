"""Risk policy: critical roles, high-risk gating, retry backoff, rollback shape."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from agent_control_plane.control_plane.models import CircuitBreakerView, CircuitStatus, TaskView

CRITICAL_ROLES = frozenset({"reviewer", "release"})
HIGH_RISK_ROLE = "release"
RETRY_BASE_SECONDS = 5
RETRY_MAX_SECONDS = 300


def is_critical_role(role: str | None) -> bool:
    return str(role or "").lower() in CRITICAL_ROLES


def is_high_risk_job(job: Any) -> bool:
    role = job.get("role") if isinstance(job, Mapping) else getattr(job, "role", None)
    return str(role or "").lower() == HIGH_RISK_ROLE


def retry_backoff_seconds(attempt: int) -> int:
    """Exponential backoff for the given retry attempt, capped at five minutes."""

    n = max(1, int(attempt or 1))
    return min(RETRY_MAX_SECONDS, RETRY_BASE_SECONDS * (2 ** (n - 1)))


def next_run_at_from_attempt(now: datetime, attempt: int) -> datetime:
    return now + timedelta(seconds=retry_backoff_seconds(attempt))


def can_dispatch_high_risk(
    task_metadata: Mapping[str, Any] | None,
    circuit: CircuitBreakerView | None,
    emergency_stop_active: bool,
) -> bool:
    """Whether a release job of a task with this metadata may be dispatched now."""

    if emergency_stop_active:
        return False
    if circuit is not None and circuit.status == CircuitStatus.OPEN:
        return False
    metadata = task_metadata or {}
    return metadata.get("rollback_available") is not False


def rollback_descriptor(task: TaskView, reason: str) -> dict[str, str]:
    return {
        "task_id": task.task_id,
        "repo": task.repo,
        "branch": task.branch,
        "reason": reason,
        "mode": "auto",
    }
