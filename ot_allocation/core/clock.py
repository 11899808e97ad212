# ot_allocation/core/clock.py
# IST-ONLY: every "now" used for status derivation comes from here.
from datetime import date, datetime, timedelta, timezone

from ..config import get_settings

IST = timezone(timedelta(minutes=get_settings().ist_offset_minutes), name="IST")


class Clock:
    """Wall clock pinned to IST."""

    def now(self) -> datetime:
        return datetime.now(IST)

    def today(self) -> date:
        return self.now().date()


class FixedClock(Clock):
    """Clock frozen at a given instant. Naive datetimes are read as IST."""

    def __init__(self, instant: datetime):
        self.set(instant)

    def set(self, instant: datetime) -> None:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=IST)
        self._instant = instant.astimezone(IST)

    def now(self) -> datetime:
        return self._instant


_system_clock = Clock()


def get_clock() -> Clock:
    """FastAPI dependency returning the process clock."""
    return _system_clock
