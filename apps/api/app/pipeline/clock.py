from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def not_before(now: datetime, *floors: datetime | None) -> datetime:
    """Return ``now`` raised to the latest of ``floors`` so per-lead timestamps never go backwards."""
    result = as_utc(now)
    for floor in floors:
        if floor is None:
            continue
        floor_utc = as_utc(floor)
        if floor_utc > result:
            result = floor_utc
    return result
