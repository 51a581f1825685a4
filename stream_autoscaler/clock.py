"""
Clock abstraction
Keeps time acquisition behind now() so time-based gates can be tested without sleeping
"""

from datetime import datetime, timedelta, timezone


class Clock:
    """Source of the current instant (timezone-aware UTC)"""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock frozen at a given instant"""

    def __init__(self, instant: datetime):
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def offset(self, delta: timedelta) -> "FixedClock":
        """Return a new clock moved by delta"""
        return FixedClock(self.instant + delta)


def to_epoch_millis(instant: datetime) -> int:
    return int(instant.timestamp() * 1000)


def from_epoch_millis(millis) -> datetime:
    return datetime.fromtimestamp(int(millis) / 1000.0, tz=timezone.utc)
