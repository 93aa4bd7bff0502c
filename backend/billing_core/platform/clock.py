"""
Clock abstraction for all temporal comparisons.

Business logic never calls datetime.now() directly; it receives a Clock so
that grace windows, retry schedules and reminder buckets can be tested at
exact instants.
"""

from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional, Protocol


class Clock(Protocol):
    """Supplies the current instant as a timezone-aware UTC datetime."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock:
    """Clock frozen at a settable instant."""

    def __init__(self, instant: Optional[datetime] = None):
        self._lock = Lock()
        self._instant = ensure_utc(instant) if instant else datetime.now(timezone.utc)

    def now(self) -> datetime:
        with self._lock:
            return self._instant

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._instant = ensure_utc(instant)

    def advance(self, delta: timedelta) -> datetime:
        with self._lock:
            self._instant = self._instant + delta
            return self._instant


def ensure_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to timezone-aware UTC.

    Naive values are assumed to already be UTC (SQLite drops tzinfo on
    round-trip).
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_day_bounds(instant: datetime) -> tuple:
    """Return (start, end) of the UTC calendar day containing instant."""
    start = ensure_utc(instant).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return start, end


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """Get the process-wide default clock."""
    return _default_clock
