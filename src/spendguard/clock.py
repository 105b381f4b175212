"""Time source for window boundaries and request expiry."""

from __future__ import annotations

import time
from datetime import date, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...

    def today(self) -> date: ...


class SystemClock:
    """Wall clock in the local timezone."""

    def now(self) -> float:
        return time.time()

    def today(self) -> date:
        return date.today()


class FixedClock:
    """Clock that only moves when told to.

    ``at`` may be naive (local time) or timezone-aware; ``today`` is the
    calendar date of ``at`` as given.
    """

    def __init__(self, at: datetime):
        self.at = at

    def now(self) -> float:
        return self.at.timestamp()

    def today(self) -> date:
        return self.at.date()

    def advance(self, **delta: float) -> None:
        self.at = self.at + timedelta(**delta)

    def set(self, at: datetime) -> None:
        self.at = at
