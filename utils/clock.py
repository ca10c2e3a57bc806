"""
Clock abstraction for the scheduler.

The ledger stores naive UTC datetimes (DateTime(timezone=False)), so every
clock returns naive UTC values and ensure_naive_datetime normalises anything
that arrives timezone-aware (webhook payloads, indexer timestamps).
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert a timezone-aware datetime to naive UTC; naive values pass through"""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def get_naive_utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock:
    """Source of 'now' injected into services and the execution engine"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return get_naive_utc_now()


class FixedClock(Clock):
    """Manually advanced clock for tests and replays"""

    def __init__(self, start: datetime):
        self._now = ensure_naive_datetime(start)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_naive_datetime(value)


system_clock = SystemClock()
