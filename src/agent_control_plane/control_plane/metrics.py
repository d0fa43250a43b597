"""Operator-facing health metrics for the control plane."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent_control_plane.control_plane.models import SystemSnapshot, TaskStatus, TickSummary


@dataclass(slots=True)
class HealthReport:
    """Tick-loop state plus task and system counters."""

    tick_in_flight: bool
    last_tick_at: datetime | None
    last_tick: TickSummary | None
    last_tick_error: str | None
    skipped_ticks: int
    task_counts: dict[str, int]
    system: SystemSnapshot

    def to_dict(self) -> dict[str, Any]:
        last_tick = None
        if self.last_tick is not None:
            last_tick = {
                "planned": self.last_tick.planned,
                "unblocked": self.last_tick.unblocked,
                "dispatched": self.last_tick.dispatched,
                "queue_depth": self.last_tick.queue_depth,
                "dispatch_limit": self.last_tick.dispatch_limit,
            }
        return {
            "tick_in_flight": self.tick_in_flight,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_tick": last_tick,
            "last_tick_error": self.last_tick_error,
            "skipped_ticks": self.skipped_ticks,
            "task_counts": dict(self.task_counts),
            "system": {
                "emergency_stop": self.system.emergency_stop.active,
                "circuit_breaker": self.system.circuit_breaker.status.value,
                "circuit_failures": self.system.circuit_breaker.failure_count,
                "global_active_jobs": self.system.global_active_jobs,
            },
        }


def summarize_task_counts(tasks: Iterable[Any]) -> dict[str, int]:
    """Count tasks per known status; every status key is present, unknown ones are ignored."""

    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        raw = task.get("status") if isinstance(task, dict) else getattr(task, "status", None)
        status = str(getattr(raw, "value", raw) or "").lower()
        if status in counts:
            counts[status] += 1
    return counts


def render_health_lines(report: HealthReport) -> list[str]:
    """Render health report lines for CLI output."""

    system = report.system
    emergency = system.emergency_stop
    circuit = system.circuit_breaker
    lines = [
        "Control plane health",
        "Task status: " + _fmt_key_value(report.task_counts),
        (
            "Emergency stop: "
            + (f"active by={emergency.by} reason={emergency.reason}" if emergency.active else "off")
        ),
        (
            f"Circuit breaker: {circuit.status.value} "
            f"failures={circuit.failure_count}/{circuit.threshold}"
            + (f" reason={circuit.reason}" if circuit.reason else "")
        ),
        f"Active jobs: {system.global_active_jobs}",
    ]
    if report.last_tick is not None:
        tick = report.last_tick
        lines.append(
            "Last tick: "
            f"planned={tick.planned} unblocked={tick.unblocked} dispatched={tick.dispatched} "
            f"queue_depth={tick.queue_depth} dispatch_limit={tick.dispatch_limit}"
            + (f" at={report.last_tick_at.isoformat()}" if report.last_tick_at else ""),
        )
    if report.last_tick_error:
        lines.append(f"Last tick error: {report.last_tick_error}")
    if report.skipped_ticks:
        lines.append(f"Skipped overlapping ticks: {report.skipped_ticks}")
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={value}" for key, value in values.items())
