"""CLI entrypoint for agent-control-plane."""

import logging
from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import Any

import rich_click as click

from agent_control_plane import __version__
from agent_control_plane.config import Settings
from agent_control_plane.control_plane.controllers import (
    ControlPlaneCliController,
    GlobalControlCommand,
    HealthCommand,
    RunLoopCommand,
    TaskControlCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskShowCommand,
    TickCommand,
    WorkerClaimCommand,
    WorkerReportCommand,
)
from agent_control_plane.control_plane.errors import ControlPlaneError
from agent_control_plane.control_plane.models import (
    GlobalControlAction,
    Priority,
    RiskProfile,
    TaskControlAction,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ControlPlaneCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


def _reports_errors(func: Callable[..., None]) -> Callable[..., None]:
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except ControlPlaneError as error:
            raise click.ClickException(f"{error.code}: {error}") from error
        except ValueError as error:
            raise click.ClickException(str(error)) from error

    return wrapper


@click.group()
@click.version_option(version=__version__, prog_name="agent-control-plane")
def acp() -> None:
    """Agent control plane CLI."""


@acp.command("health")
@_db_path_option
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@_reports_errors
def health(db_path: Path | None, as_json: bool) -> None:
    """Show task counts, emergency stop and circuit breaker state."""

    _emit_lines(CONTROLLER.health(HealthCommand(db_path=db_path, as_json=as_json)))


@acp.group()
def tasks() -> None:
    """Task commands."""


@tasks.command("list")
@_db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=40,
    show_default=True,
    help="Max number of tasks to print, newest first.",
)
@_reports_errors
def tasks_list(db_path: Path | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(CONTROLLER.list_tasks(TaskListCommand(db_path=db_path, limit=limit)))


@tasks.command("create")
@_db_path_option
@click.option("--goal", required=True, help="What the task should achieve.")
@click.option("--repo", required=True, help="Target repository.")
@click.option("--branch", default=None, help="Target branch (default: main).")
@click.option(
    "--criterion",
    "acceptance_criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
@click.option(
    "--priority",
    type=click.Choice([item.value for item in Priority], case_sensitive=False),
    default=None,
    help="Task priority (default: P1).",
)
@click.option(
    "--risk-profile",
    type=click.Choice([item.value for item in RiskProfile], case_sensitive=False),
    default=None,
    help="Risk profile (default: medium).",
)
@click.option(
    "--parallelism",
    "parallelism_limit",
    type=click.IntRange(min=1, max=10),
    default=None,
    help="Max in-flight jobs for this task.",
)
@click.option(
    "--rollback-available/--no-rollback-available",
    default=True,
    show_default=True,
    help="Whether the release stage may run (a rollback path exists).",
)
@click.option("--requested-by", default=None, help="Operator identity for the audit trail.")
@_reports_errors
def tasks_create(  # noqa: PLR0913
    db_path: Path | None,
    goal: str,
    repo: str,
    branch: str | None,
    acceptance_criteria: tuple[str, ...],
    priority: str | None,
    risk_profile: str | None,
    parallelism_limit: int | None,
    rollback_available: bool,
    requested_by: str | None,
) -> None:
    """Create a queued task; the next tick plans it."""

    _emit_lines(
        CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                goal=goal,
                repo=repo,
                branch=branch,
                acceptance_criteria=acceptance_criteria,
                priority=priority,
                risk_profile=risk_profile,
                parallelism_limit=parallelism_limit,
                rollback_available=rollback_available,
                requested_by=requested_by,
            ),
        ),
    )


@tasks.command("show")
@_db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--events",
    type=click.IntRange(min=0, max=400),
    default=20,
    show_default=True,
    help="How many latest events to print.",
)
@_reports_errors
def tasks_show(db_path: Path | None, task_id: str, events: int) -> None:
    """Show task details: jobs, DAG progress and audit trail."""

    _emit_lines(
        CONTROLLER.show_task(TaskShowCommand(db_path=db_path, task_id=task_id, events=events)),
    )


@tasks.command("control")
@_db_path_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--action",
    type=click.Choice([item.value for item in TaskControlAction], case_sensitive=False),
    required=True,
    help="Control action.",
)
@click.option("--requested-by", default="cli", show_default=True, help="Operator identity.")
@click.option("--reason", default=None, help="Reason recorded in the audit trail.")
@_reports_errors
def tasks_control(
    db_path: Path | None,
    task_id: str,
    action: str,
    requested_by: str,
    reason: str | None,
) -> None:
    """Pause, resume, cancel, emergency-stop or force-rollback a task."""

    _emit_lines(
        CONTROLLER.control_task(
            TaskControlCommand(
                db_path=db_path,
                task_id=task_id,
                action=action.lower(),
                requested_by=requested_by,
                reason=reason,
            ),
        ),
    )


@acp.command("control")
@_db_path_option
@click.option(
    "--action",
    type=click.Choice([item.value for item in GlobalControlAction], case_sensitive=False),
    required=True,
    help="Global control action.",
)
@click.option("--requested-by", default="cli", show_default=True, help="Operator identity.")
@click.option("--reason", default=None, help="Reason recorded with the control change.")
@_reports_errors
def control(db_path: Path | None, action: str, requested_by: str, reason: str | None) -> None:
    """Clear the emergency stop or reset the circuit breaker."""

    _emit_lines(
        CONTROLLER.control_global(
            GlobalControlCommand(
                db_path=db_path,
                action=action.lower(),
                requested_by=requested_by,
                reason=reason,
            ),
        ),
    )


@acp.group()
def worker() -> None:
    """Worker-facing commands (JSON output)."""


@worker.command("claim")
@_db_path_option
@click.option("--worker-id", required=True, help="Claiming worker id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=20),
    default=1,
    show_default=True,
    help="Max jobs to claim.",
)
@_reports_errors
def worker_claim(db_path: Path | None, worker_id: str, limit: int) -> None:
    """Claim dispatched jobs for a worker."""

    _emit_lines(
        CONTROLLER.claim(WorkerClaimCommand(db_path=db_path, worker_id=worker_id, limit=limit)),
    )


@worker.command("report")
@_db_path_option
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--status",
    required=True,
    help="Result status, for example completed, failed, timeout, canceled.",
)
@click.option("--worker-id", default=None, help="Reporting worker id.")
@click.option("--error", default=None, help="Error summary for failed results.")
@click.option("--artifacts", "artifacts_json", default=None, help="Artifacts as JSON.")
@click.option("--logs", "logs_json", default=None, help="Logs as JSON.")
@click.option("--metrics", "metrics_json", default=None, help="Metrics as JSON.")
@_reports_errors
def worker_report(  # noqa: PLR0913
    db_path: Path | None,
    job_id: str,
    status: str,
    worker_id: str | None,
    error: str | None,
    artifacts_json: str | None,
    logs_json: str | None,
    metrics_json: str | None,
) -> None:
    """Report a job result."""

    _emit_lines(
        CONTROLLER.report(
            WorkerReportCommand(
                db_path=db_path,
                job_id=job_id,
                status=status,
                worker_id=worker_id,
                error=error,
                artifacts_json=artifacts_json,
                logs_json=logs_json,
                metrics_json=metrics_json,
            ),
        ),
    )


@acp.command("tick")
@_db_path_option
@_reports_errors
def tick(db_path: Path | None) -> None:
    """Run one control-plane tick: plan, unblock, dispatch."""

    _emit_lines(CONTROLLER.tick(TickCommand(db_path=db_path)))


@acp.command("run")
@_db_path_option
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks (default: run until interrupted).",
)
@click.option(
    "--log-level",
    default=None,
    help="Logging level; defaults to CONTROL_PLANE_LOG_LEVEL or INFO.",
)
@_reports_errors
def run(db_path: Path | None, max_ticks: int | None, log_level: str | None) -> None:
    """Run the tick loop until SIGINT/SIGTERM."""

    level = (log_level or Settings.from_env(db_path=db_path).log_level).strip().upper()
    if level not in logging.getLevelNamesMapping():
        raise click.BadParameter(f"Unknown log level: {level}", param_hint="--log-level")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _emit_lines(CONTROLLER.run_loop(RunLoopCommand(db_path=db_path, max_ticks=max_ticks)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    acp()
