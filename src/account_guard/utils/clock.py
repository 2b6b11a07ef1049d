"""Time source abstraction.

Every service reads the current time through a :class:`Clock` so that
windows, cooling-off deadlines and expiries can be driven deterministically.
All timestamps are integer epoch milliseconds.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol

MS_PER_SECOND = 1_000
MS_PER_HOUR = 3_600_000
MS_PER_DAY = 86_400_000


class Clock(Protocol):
    """Protocol for time sources."""

    def now_ms(self) -> int: ...


class SystemClock:
    """Wall-clock time source."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000


def to_datetime(ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / MS_PER_SECOND, tz=UTC)


def hour_of_day(ms: int) -> int:
    """UTC hour (0-23) of an epoch-millisecond timestamp."""
    return to_datetime(ms).hour


def iso_date(ms: int) -> str:
    """UTC calendar date (``YYYY-MM-DD``) of an epoch-millisecond timestamp."""
    return to_datetime(ms).date().isoformat()
