from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    # Deterministic clock for tests and replay tooling.
    def __init__(self, current: datetime | None = None) -> None:
        current = current or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        self._current = current

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, seconds: float) -> datetime:
        self._current = self._current + timedelta(seconds=seconds)
        return self._current
