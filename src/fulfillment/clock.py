"""
Time sources.

Every component that reasons about time (reservation expiry, claim and
key takeover, marker retention) takes a ``Clock``: a zero-argument callable
returning an aware UTC datetime. Production code uses ``utcnow``; tests
drive a ``ManualClock``.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


def sortable_timestamp(value: datetime) -> str:
    """
    ISO 8601 text in UTC with fixed microsecond precision.

    Values produced this way compare chronologically as strings, which is
    what SQLite TEXT columns rely on.
    """
    return value.astimezone(UTC).isoformat(timespec="microseconds")


class ManualClock:
    """
    Clock that only moves when told to.

    Example:
        >>> clock = ManualClock()
        >>> manager = ReservationManager(clock=clock)
        >>> clock.advance(timedelta(minutes=16))
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | float) -> datetime:
        """Move forward by a timedelta or a number of seconds."""
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        self._now += delta
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


__all__ = ["Clock", "ManualClock", "sortable_timestamp", "utcnow"]
