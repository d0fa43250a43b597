"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_control_plane.control_plane.models import TaskCreate, TaskDetails
from agent_control_plane.control_plane.planner import build_execution_plan
from agent_control_plane.control_plane.repository import ControlPlaneRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[ControlPlaneRepository]:
    repository = ControlPlaneRepository(
        tmp_path / "control_plane.db",
        global_parallelism=10,
        default_task_parallelism=8,
        circuit_threshold=3,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def planned_task(repository: ControlPlaneRepository) -> TaskDetails:
    """A task with the standard four-stage plan attached."""

    created = repository.create_task(
        TaskCreate(
            goal="Implement and deploy feature",
            repo="/repo/path",
            branch="main",
            acceptance_criteria=["build passes", "deploy succeeds"],
            priority="P0",
            risk_profile="high",
        ),
    )
    plan = build_execution_plan(created, parallelism_limit=8)
    return repository.attach_plan(created.task_id, plan, "unit_test_plan")
