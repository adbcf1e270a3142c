"""
Clock used for usage-date keys and subscription expiry checks.

Routes receive it through the `get_clock` dependency so tests can pin "now".
All datetimes are naive UTC, matching the DateTime columns.
"""
from datetime import date, datetime, timedelta, timezone


class SystemClock:
    def now(self) -> datetime:
        return utcnow()

    def today(self) -> date:
        return self.now().date()


class FixedClock(SystemClock):
    """Clock frozen at a given instant. Used by tests and scripted jobs."""

    def __init__(self, instant: datetime):
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def advance(self, **delta) -> None:
        self.instant = self.instant + timedelta(**delta)


_system_clock = SystemClock()


def get_clock() -> SystemClock:
    """FastAPI dependency returning the process clock."""
    return _system_clock


def utcnow() -> datetime:
    """Naive UTC now, used as column default."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
