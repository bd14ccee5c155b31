from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

# All timestamps are naive UTC, matching what the ORM stores.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.utcnow()


class FrozenClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


__all__ = ["Clock", "utcnow", "FrozenClock"]
