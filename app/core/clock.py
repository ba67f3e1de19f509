"""
Time source abstraction.

Every "now" used for expiry, lockout and token lifetimes comes from a Clock so
tests can pin and advance time deterministically.

Datetimes are naive UTC to match the DATETIME columns they are compared with.
"""

from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall-clock time in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC).replace(tzinfo=None)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or SystemClock().now()

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward, e.g. clock.advance(minutes=16)."""
        self._now += timedelta(**kwargs)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


system_clock = SystemClock()


def get_clock() -> Clock:
    """Dependency for getting the application clock."""
    return system_clock
