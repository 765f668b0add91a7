"""
Injected clock so decay, cooldown and expiry logic never read wall time directly.
All datetimes are naive UTC, matching the DateTime columns.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall-clock time."""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Manually controlled clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime):
        self._now = value

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now
