"""Domain models for the task/job control plane."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    QUEUED = "queued"
    PLANNING = "planning"
    RUNNING = "running"
    REVIEWING = "reviewing"
    RELEASING = "releasing"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    CANCELED = "canceled"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    BLOCKED = "blocked"
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELED = "canceled"


class Priority(str, Enum):
    P0 = "P0"
    P1 = "P1"
    P2 = "P2"


class RiskProfile(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class TaskControlAction(str, Enum):
    """Operator actions scoped to one task."""

    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    EMERGENCY_STOP = "emergency_stop"
    FORCE_ROLLBACK = "force_rollback"


class GlobalControlAction(str, Enum):
    """Operator actions on fleet-wide controls."""

    EMERGENCY_STOP_CLEAR = "emergency_stop_clear"
    CIRCUIT_RESET = "circuit_reset"


TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.TIMEOUT, JobStatus.CANCELED},
)
OUTSTANDING_JOB_STATUSES = frozenset(
    {
        JobStatus.BLOCKED,
        JobStatus.QUEUED,
        JobStatus.DISPATCHED,
        JobStatus.CLAIMED,
        JobStatus.RUNNING,
    },
)
IN_FLIGHT_JOB_STATUSES = frozenset({JobStatus.DISPATCHED, JobStatus.CLAIMED, JobStatus.RUNNING})
TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.ROLLED_BACK, TaskStatus.CANCELED},
)
DISPATCHABLE_TASK_STATUSES = frozenset(
    {TaskStatus.RUNNING, TaskStatus.REVIEWING, TaskStatus.RELEASING},
)
PLANNING_TASK_STATUSES = frozenset({TaskStatus.QUEUED, TaskStatus.PLANNING})


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    goal: str
    repo: str
    branch: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: str | None = None
    risk_profile: str | None = None
    parallelism_limit: int | None = None
    rollback_available: bool = True
    source: str | None = None
    requested_by: str | None = None

    def to_mapping(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PlanNode:
    """One stage of an execution plan."""

    node_id: str
    role: str
    timeout_s: int
    max_retries: int
    depends_on: list[str]
    payload: dict[str, Any]


@dataclass(slots=True)
class PlanEdge:
    source: str
    target: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.source, "to": self.target}


@dataclass(slots=True)
class ExecutionPlan:
    """DAG of plan nodes attached to a task."""

    parallelism_limit: int
    nodes: list[PlanNode]
    edges: list[PlanEdge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "parallelism_limit": self.parallelism_limit,
            "nodes": [asdict(node) for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }


@dataclass(slots=True)
class TaskView:
    """Readable task row."""

    task_id: str
    goal: str
    repo: str
    branch: str
    acceptance_criteria: list[str]
    priority: Priority
    risk_profile: RiskProfile
    status: TaskStatus
    parallelism_limit: int
    metadata: dict[str, Any]
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failed_reason: str | None
    degraded: bool


@dataclass(slots=True)
class JobView:
    """Readable job row."""

    job_id: str
    task_id: str
    node_id: str
    role: str
    payload: dict[str, Any]
    timeout_s: int
    max_retries: int
    attempt: int
    status: JobStatus
    worker_id: str | None
    depends_on: list[str]
    next_run_at: datetime | None
    last_error: str | None
    artifacts: Any
    logs: Any
    metrics: Any
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for the audit trail."""

    id: int
    task_id: str
    event_type: str
    payload: Any
    ts: datetime


@dataclass(slots=True)
class DecisionView:
    id: int
    task_id: str
    decision: str
    reason: str
    evidence: Any
    ts: datetime


@dataclass(slots=True)
class RollbackView:
    id: int
    task_id: str
    reason: str
    from_version: str | None
    to_version: str | None
    status: str
    ts: datetime


@dataclass(slots=True)
class CircuitBreakerView:
    """State of the global circuit breaker."""

    scope: str
    status: CircuitStatus
    failure_count: int
    threshold: int
    opened_at: datetime | None
    reason: str | None
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status == CircuitStatus.OPEN


@dataclass(slots=True)
class EmergencyStopView:
    active: bool = False
    by: str | None = None
    reason: str | None = None
    at: datetime | None = None


@dataclass(slots=True)
class DagProgress:
    """Per-task job counters by status."""

    total: int = 0
    blocked: int = 0
    queued: int = 0
    dispatched: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    timeout: int = 0
    canceled: int = 0


@dataclass(slots=True)
class ControlsView:
    emergency_stop: EmergencyStopView
    circuit_breaker: CircuitBreakerView


@dataclass(slots=True)
class TaskDetails:
    """Task with plan, jobs, audit trail, and global controls."""

    task: TaskView
    execution_plan: dict[str, Any] | None
    dag_progress: DagProgress
    jobs: list[JobView]
    events: list[TaskEventView]
    decisions: list[DecisionView]
    rollbacks: list[RollbackView]
    controls: ControlsView

    @property
    def task_id(self) -> str:
        return self.task.task_id

    @property
    def status(self) -> TaskStatus:
        return self.task.status


@dataclass(slots=True)
class WorkerResult:
    """Result report posted by a worker for one job."""

    job_id: str
    status: str
    worker_id: str | None = None
    error: str | None = None
    artifacts: Any = None
    logs: Any = None
    metrics: Any = None


@dataclass(slots=True)
class WorkerResultOutcome:
    job: JobView
    task: TaskDetails | None
    duplicate: bool


@dataclass(slots=True)
class SystemSnapshot:
    """Global dispatch inputs sampled once per tick."""

    emergency_stop: EmergencyStopView
    circuit_breaker: CircuitBreakerView
    global_active_jobs: int
    queue_depth: int = 0


@dataclass(slots=True)
class GlobalControlResult:
    emergency_stop: EmergencyStopView
    circuit_breaker: CircuitBreakerView


@dataclass(slots=True)
class TickSummary:
    """What one control-plane tick did."""

    planned: int
    unblocked: int
    dispatched: int
    queue_depth: int
    dispatch_limit: int
    snapshot: SystemSnapshot
