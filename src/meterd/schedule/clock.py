"""
schedule/clock.py — Wall clock with alarms

The scheduler never reads time or sleeps directly; it asks a Clock. The
daemon uses SystemClock. ManualClock lets tests move time forward and
fires any alarms that come due, synchronously.
"""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

AlarmCallback = Callable[[], None]


class Clock(Protocol):
    def now(self) -> datetime: ...

    def add_alarm(self, when: datetime, callback: AlarmCallback) -> object: ...

    def remove_alarm(self, handle: object) -> None: ...


class SystemClock:
    """Real time; alarms run on the asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone()

    def add_alarm(self, when: datetime, callback: AlarmCallback) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        delay = max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)
        return loop.call_later(delay, callback)

    def remove_alarm(self, handle: object) -> None:
        handle.cancel()


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self._now = start
        self._alarms: dict[int, tuple[datetime, AlarmCallback]] = {}
        self._ids = itertools.count()

    def now(self) -> datetime:
        return self._now

    def add_alarm(self, when: datetime, callback: AlarmCallback) -> int:
        handle = next(self._ids)
        self._alarms[handle] = (when, callback)
        return handle

    def remove_alarm(self, handle: object) -> None:
        self._alarms.pop(handle, None)

    @property
    def pending_alarms(self) -> list[datetime]:
        return sorted(when for when, _ in self._alarms.values())

    def set_time(self, now: datetime) -> None:
        """Jump to `now` and fire every alarm due at or before it, in order."""
        self._now = now
        due = sorted(
            ((when, handle) for handle, (when, _) in self._alarms.items() if when <= now),
        )
        for _, handle in due:
            alarm = self._alarms.pop(handle, None)
            if alarm is not None:
                alarm[1]()
