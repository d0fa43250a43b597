"""Small normalization helpers shared by the control-plane modules."""

from __future__ import annotations

import math
from uuid import uuid4

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}
_FALSE_VALUES = {"0", "false", "no", "n", "off"}


def random_id(prefix: str = "id") -> str:
    return f"{prefix}_{uuid4()}"


def clamp_int(value: object, minimum: int, maximum: int, fallback: int) -> int:
    """Floor ``value`` into ``[minimum, maximum]``; unparseable input yields ``fallback``."""

    if value is None or value == "" or isinstance(value, bool):
        return fallback
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number):
        return fallback
    return max(minimum, min(maximum, math.floor(number)))


def parse_bool(value: object, fallback: bool = False) -> bool:
    if value is None or value == "":
        return fallback
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return fallback


def truncate(value: object, limit: int) -> str | None:
    """Trimmed string cut to ``limit`` characters, or ``None`` when empty."""

    if value is None:
        return None
    text = str(value).strip()[:limit]
    return text or None


def safe_str_list(value: object, limit: int = 50) -> list[str]:
    if not isinstance(value, (list, tuple)):
        return []
    items = ("" if item is None else str(item).strip() for item in value[:limit])
    return [item for item in items if item]
