"""SQLModel ORM tables for control-plane storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel

GLOBAL_SCOPE = "global"
EMERGENCY_STOP_KEY = "emergency_stop"


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_status_created", "status", "created_at"),)

    task_id: str = Field(primary_key=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    repo: str
    branch: str
    acceptance_criteria_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: str
    risk_profile: str
    status: str = Field(index=True)
    parallelism_limit: int
    metadata_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    failed_reason: str | None = Field(default=None, sa_column=Column(Text))
    degraded: bool = Field(default=False)


class TaskPlanRow(SQLModel, table=True):
    __tablename__ = "task_plans"  # type: ignore[bad-override]

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    plan_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_task_status_updated", "task_id", "status", "updated_at"),
        Index("idx_jobs_status_next_run", "status", "next_run_at", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    node_id: str
    role: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    timeout_s: int
    max_retries: int
    attempt: int = Field(default=0)
    status: str
    worker_id: str | None = Field(default=None)
    depends_on_json: str = Field(sa_column=Column(Text, nullable=False))
    next_run_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    artifacts_json: str | None = Field(default=None, sa_column=Column(Text))
    logs_json: str | None = Field(default=None, sa_column=Column(Text))
    metrics_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskEventRow(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_events_task_id", "task_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str
    event_type: str
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DecisionRecordRow(SQLModel, table=True):
    __tablename__ = "decision_records"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_decision_records_task_id", "task_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str
    decision: str
    reason: str = Field(sa_column=Column(Text, nullable=False))
    evidence_json: str | None = Field(default=None, sa_column=Column(Text))
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RollbackRecordRow(SQLModel, table=True):
    __tablename__ = "rollback_records"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_rollback_records_task_id", "task_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str
    reason: str = Field(sa_column=Column(Text, nullable=False))
    from_version: str | None = None
    to_version: str | None = None
    status: str
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemControlRow(SQLModel, table=True):
    __tablename__ = "system_controls"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CircuitBreakerRow(SQLModel, table=True):
    __tablename__ = "circuit_breakers"  # type: ignore[bad-override]

    scope: str = Field(primary_key=True)
    status: str
    failure_count: int
    threshold: int
    opened_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    reason: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
