"""
Clock -- injectable time source for workflows.

Responsibility:
    Every timestamp the kernel records (history entries, lease
    acquisition, audit entries, ``created_at``/``updated_at``) and every
    duration it measures (lease age, time in state) is read from a
    ``Clock`` handed in at construction.

Architecture position:
    Kernel > Domain.  ``SystemClock`` is the only place wall-clock time
    enters the system.

Invariants enforced:
    * Times are timezone-aware UTC.
    * ``DeterministicClock`` only moves when told to, and moves in exact
      ``timedelta`` steps, so lease expiry boundaries are reproducible to
      the millisecond.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Source of the current UTC time."""

    @abstractmethod
    def now_utc(self) -> datetime:
        ...

    def elapsed_since(self, moment: datetime) -> timedelta:
        """Time between ``moment`` and now (negative if ``moment`` is ahead)."""
        return self.now_utc() - moment


class SystemClock(Clock):
    """Wall-clock time.  Not for lock-expiry tests."""

    def now_utc(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock that stands still until advanced.

    ``advance`` / ``advance_ms`` move it forward; ``set_time`` jumps to an
    absolute instant.  Naive datetimes passed to ``set_time`` are taken
    as UTC.
    """

    def __init__(self, start: datetime | None = None):
        self._current = _as_utc(start or DEFAULT_START)

    def now_utc(self) -> datetime:
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = _as_utc(moment)

    def advance(self, seconds: float = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_ms(self, milliseconds: int) -> None:
        self._current += timedelta(milliseconds=milliseconds)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)
