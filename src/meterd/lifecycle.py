"""
lifecycle.py — Daemon guard policies

  - check_not_root(): refuse to run with superuser privileges. No attempt
    is made to drop privileges; the daemon just exits.
  - InactivityTimer: exit the daemon once nothing has happened for a while.
    Any externally observable activity (a client connecting, an entry
    changing, a message arriving) calls touch() to restart it. While a
    hold is taken (a client is connected) the countdown is suspended.
"""

from __future__ import annotations

import asyncio
import os
from typing import Callable, Optional

from meterd.exceptions import InvalidEnvironmentError
from meterd.observability.logger import get_logger

log = get_logger(__name__)

INACTIVITY_EXIT_REASON = "Exiting due to reaching inactivity timeout"


def check_not_root() -> None:
    """Raise InvalidEnvironmentError if the real or effective uid is 0."""
    if os.getuid() == 0 or os.geteuid() == 0:
        raise InvalidEnvironmentError("This daemon must not be run as root.")


class InactivityTimer:
    """
    One-shot countdown on the running event loop.

    A timeout of zero or less disables it: nothing is ever scheduled and
    `expired` is never set.
    """

    def __init__(
        self,
        timeout_s: float,
        on_expire: Optional[Callable[[], None]] = None,
    ) -> None:
        self._timeout_s = timeout_s
        self._on_expire = on_expire
        self._handle: Optional[asyncio.TimerHandle] = None
        self._holds = 0
        self._started = False
        self.expired = asyncio.Event()

    @property
    def enabled(self) -> bool:
        return self._timeout_s > 0

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    @property
    def counting(self) -> bool:
        return self._handle is not None

    def start(self) -> None:
        self._started = True
        self._restart()

    def touch(self) -> None:
        """Record activity: restart the countdown from now."""
        if self._started:
            self._restart()

    def hold(self) -> None:
        """Suspend the countdown until the matching release()."""
        self._holds += 1
        self.cancel()

    def release(self) -> None:
        if self._holds == 0:
            raise RuntimeError("InactivityTimer.release() without hold()")
        self._holds -= 1
        self.touch()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _restart(self) -> None:
        self.cancel()
        if not self.enabled or self._holds or self.expired.is_set():
            return
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._timeout_s, self._fire)

    def _fire(self) -> None:
        self._handle = None
        log.info("daemon.inactivity_timeout", reason=INACTIVITY_EXIT_REASON, timeout_s=self._timeout_s)
        self.expired.set()
        if self._on_expire is not None:
            self._on_expire()
