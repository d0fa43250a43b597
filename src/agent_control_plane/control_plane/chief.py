"""Admission control: how many jobs one tick may dispatch."""

from __future__ import annotations

from agent_control_plane.control_plane.common import clamp_int
from agent_control_plane.control_plane.models import SystemSnapshot

DEFAULT_MAX_PARALLELISM = 10
_BURST_FLOOR = 4


def decide_dispatch_limit(snapshot: SystemSnapshot, *, max_parallelism: int | None = None) -> int:
    configured_max = clamp_int(max_parallelism, 1, 20, DEFAULT_MAX_PARALLELISM)
    queue_depth = max(0, snapshot.queue_depth)

    if snapshot.emergency_stop.active or snapshot.circuit_breaker.is_open:
        return 0
    if queue_depth >= configured_max:
        return configured_max
    if queue_depth >= _BURST_FLOOR:
        return min(configured_max, max(_BURST_FLOOR, queue_depth))

    # Small floor keeps progress without hot-looping on a near-empty queue.
    idle_boost = 2 if snapshot.global_active_jobs == 0 else 1
    return min(configured_max, max(1, queue_depth + idle_boost))
