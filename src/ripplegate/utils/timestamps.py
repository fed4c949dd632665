"""Timestamp helpers shared by the engine and the store."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

DETERMINISTIC_TIMESTAMP = "1970-01-01T00:00:00Z"

Clock = Callable[[], str]


def wallclock_timestamp() -> str:
    """Return the current UTC time in ISO-8601 form."""
    return datetime.now(UTC).isoformat()


def deterministic_timestamp() -> str:
    """Return the fixed epoch timestamp used for reproducible record sets."""
    return DETERMINISTIC_TIMESTAMP


def clock_for_mode(timestamp_mode: str) -> Clock:
    """Resolve a clock from a CLI timestamp mode."""
    normalized = timestamp_mode.strip().lower()
    if normalized == "deterministic":
        return deterministic_timestamp
    if normalized in {"wallclock", "now"}:
        return wallclock_timestamp
    raise ValueError(
        f"Unsupported timestamp mode: {timestamp_mode}. "
        "Expected one of: deterministic, now, wallclock."
    )
