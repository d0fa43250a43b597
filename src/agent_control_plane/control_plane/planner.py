"""Deterministic planner: a task becomes a fixed code -> test -> review -> release DAG."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, is_dataclass
from typing import Any

from agent_control_plane.control_plane.common import clamp_int
from agent_control_plane.control_plane.models import ExecutionPlan, PlanEdge, PlanNode

DEFAULT_PLAN_PARALLELISM = 8

# (node_id, role, timeout_s, max_retries)
_STAGES: tuple[tuple[str, str, int, int], ...] = (
    ("coding", "coder", 45 * 60, 2),
    ("testing", "tester", 30 * 60, 2),
    ("reviewing", "reviewer", 20 * 60, 1),
    ("releasing", "release", 20 * 60, 1),
)


def build_execution_plan(
    task_spec: Mapping[str, Any] | Any,
    *,
    parallelism_limit: int | None = None,
) -> ExecutionPlan:
    """Build the standard four-stage plan for a task.

    ``task_spec`` may be a mapping or a task view. The task's own
    ``parallelism_limit`` wins; ``parallelism_limit`` is the fallback, and 8 the
    fallback of last resort. The function has no side effects.
    """

    spec = _as_mapping(task_spec)
    limit = clamp_int(
        spec.get("parallelism_limit"),
        1,
        10,
        clamp_int(parallelism_limit, 1, 10, DEFAULT_PLAN_PARALLELISM),
    )
    criteria = spec.get("acceptance_criteria")
    base_payload = {
        "goal": spec.get("goal"),
        "repo": spec.get("repo"),
        "branch": spec.get("branch"),
        "acceptance_criteria": list(criteria) if isinstance(criteria, (list, tuple)) else [],
        "priority": _enum_value(spec.get("priority")),
        "risk_profile": _enum_value(spec.get("risk_profile")),
    }

    nodes: list[PlanNode] = []
    previous: str | None = None
    for node_id, role, timeout_s, max_retries in _STAGES:
        nodes.append(
            PlanNode(
                node_id=node_id,
                role=role,
                timeout_s=timeout_s,
                max_retries=max_retries,
                depends_on=[previous] if previous is not None else [],
                payload={**base_payload, "stage": node_id},
            ),
        )
        previous = node_id

    edges = [PlanEdge(source=a.node_id, target=b.node_id) for a, b in zip(nodes, nodes[1:])]
    return ExecutionPlan(parallelism_limit=limit, nodes=nodes, edges=edges)


def _as_mapping(task_spec: Mapping[str, Any] | Any) -> Mapping[str, Any]:
    if isinstance(task_spec, Mapping):
        return task_spec
    task = getattr(task_spec, "task", task_spec)
    if is_dataclass(task) and not isinstance(task, type):
        return asdict(task)
    raise TypeError(f"Unsupported task spec type: {type(task_spec).__name__}")


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)
