"""Runtime configuration for the control plane."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agent_control_plane.control_plane.common import clamp_int

_ENV_PREFIX = "CONTROL_PLANE_"
_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


@dataclass(slots=True)
class SchedulerSettings:
    """Concurrency and circuit-breaker knobs of the state store."""

    global_parallelism: int = 10
    default_task_parallelism: int = 8
    circuit_threshold: int = 3


@dataclass(slots=True)
class LoopSettings:
    """Tick loop settings."""

    tick_interval_seconds: float = 1.0
    planning_batch: int = 10
    dispatcher_id: str = "control-plane-main"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".control_plane.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        loop_ms = clamp_int(_env_int("LOOP_MS", 1000), 250, 10_000, 1000)
        return cls(
            db_path=db_path or Path(os.getenv(f"{_ENV_PREFIX}DB_PATH", ".control_plane.db")),
            sqlite_busy_timeout_ms=_env_int("SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv(f"{_ENV_PREFIX}LOG_LEVEL", "INFO").strip().upper() or "INFO",
            scheduler=SchedulerSettings(
                global_parallelism=clamp_int(_env_int("GLOBAL_PARALLELISM", 10), 1, 20, 10),
                default_task_parallelism=clamp_int(_env_int("TASK_PARALLELISM", 8), 1, 10, 8),
                circuit_threshold=clamp_int(_env_int("CIRCUIT_THRESHOLD", 3), 1, 20, 3),
            ),
            loop=LoopSettings(
                tick_interval_seconds=loop_ms / 1000.0,
                planning_batch=clamp_int(_env_int("PLANNING_BATCH", 10), 1, 100, 10),
                dispatcher_id=(
                    os.getenv(f"{_ENV_PREFIX}DISPATCHER_ID", "").strip() or "control-plane-main"
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{_ENV_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"{_ENV_PREFIX}LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}: "
                f"{self.log_level!r}",
            )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}", "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid {_ENV_PREFIX}{name} value: {raw!r}") from error
