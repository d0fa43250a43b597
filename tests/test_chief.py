from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from agent_control_plane.control_plane.chief import decide_dispatch_limit
from agent_control_plane.control_plane.models import (
    CircuitBreakerView,
    CircuitStatus,
    EmergencyStopView,
    SystemSnapshot,
)

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Admission Control"),
]


def _snapshot(
    *,
    queue_depth: int = 0,
    active: int = 0,
    emergency: bool = False,
    circuit: CircuitStatus = CircuitStatus.CLOSED,
) -> SystemSnapshot:
    return SystemSnapshot(
        emergency_stop=EmergencyStopView(active=emergency),
        circuit_breaker=CircuitBreakerView(
            scope="global",
            status=circuit,
            failure_count=0,
            threshold=3,
            opened_at=None,
            reason=None,
            updated_at=datetime.now(tz=UTC),
        ),
        global_active_jobs=active,
        queue_depth=queue_depth,
    )


def test_emergency_stop_or_open_circuit_admits_nothing() -> None:
    assert decide_dispatch_limit(_snapshot(queue_depth=50, emergency=True)) == 0
    assert decide_dispatch_limit(_snapshot(queue_depth=50, circuit=CircuitStatus.OPEN)) == 0


@pytest.mark.parametrize(
    ("queue_depth", "active", "max_parallelism", "expected"),
    [
        (0, 0, None, 2),
        (0, 3, None, 1),
        (2, 0, None, 4),
        (3, 1, None, 4),
        (4, 0, None, 4),
        (7, 5, None, 7),
        (10, 0, None, 10),
        (40, 0, None, 10),
        (40, 0, 15, 15),
        (40, 0, 99, 20),
        (6, 0, 5, 5),
        (1, 0, 1, 1),
        (-5, 0, None, 2),
    ],
)
def test_dispatch_limit_heuristic(queue_depth, active, max_parallelism, expected) -> None:
    snapshot = _snapshot(queue_depth=queue_depth, active=active)
    assert decide_dispatch_limit(snapshot, max_parallelism=max_parallelism) == expected
