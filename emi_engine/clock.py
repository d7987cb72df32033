"""
Clock collaborator

Status derivation depends on "today"; the engine never reads the wall clock
directly but asks an injected clock instead.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current business date"""

    @abstractmethod
    def now(self) -> date:
        pass


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> date:
        return datetime.now(timezone.utc).date()


class FixedClock(Clock):
    """Clock frozen at a given date, advanced manually (tests, backfills)"""

    def __init__(self, today: date):
        self._today = today

    def now(self) -> date:
        return self._today

    def set(self, today: date) -> None:
        self._today = today

    def advance(self, days: int = 1) -> date:
        self._today = self._today + timedelta(days=days)
        return self._today
