"""Shape of the job payload handed to pull-based workers on claim."""

from __future__ import annotations

from typing import Any

from agent_control_plane.control_plane.models import JobView


def worker_payload_for_job(job: JobView) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "task_id": job.task_id,
        "role": job.role,
        "payload": job.payload,
        "timeout_s": job.timeout_s,
        "max_retries": job.max_retries,
        "attempt": job.attempt,
        "depends_on": list(job.depends_on),
    }
