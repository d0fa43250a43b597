"""Error taxonomy surfaced by control-plane operations."""

from __future__ import annotations


class ControlPlaneError(Exception):
    """Base error carrying a stable machine-readable ``code``."""

    code = "control_plane_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class ControlPlaneValidationError(ControlPlaneError, ValueError):
    """Caller input is malformed; nothing was written."""

    code = "validation_error"


class UnsupportedActionError(ControlPlaneValidationError):
    code = "unsupported_action"

    def __init__(self, action: str, *, scope: str = "task") -> None:
        message = "unsupported_action" if scope == "task" else f"unsupported_{scope}_action"
        super().__init__(message)
        self.action = action
        self.scope = scope


class TaskNotFoundError(ControlPlaneError, LookupError):
    code = "task_not_found"

    def __init__(self, task_id: str) -> None:
        super().__init__(self.code)
        self.task_id = task_id


class JobNotFoundError(ControlPlaneError, LookupError):
    code = "job_not_found"

    def __init__(self, job_id: str) -> None:
        super().__init__(self.code)
        self.job_id = job_id


class JobOwnershipError(ControlPlaneError):
    """A worker reported a result for a job pinned to another worker."""

    code = "job_owned_by_other_worker"

    def __init__(self, job_id: str, *, owner: str, reporter: str) -> None:
        super().__init__(self.code)
        self.job_id = job_id
        self.owner = owner
        self.reporter = reporter
