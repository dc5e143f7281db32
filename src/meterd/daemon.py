"""
daemon.py — meterd scheduler daemon

Owns the one scheduler context for the process and wires its
collaborators together:

    SystemClock ──▶ AdmissionScheduler ◀── GatewayServer (IPC, PeerManager)
                          │
                    InactivityTimer (exit when idle)

run() returns when the inactivity timer expires or a termination signal
arrives; both are clean exits.
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

from meterd.config.settings import Settings
from meterd.gateway.gateway_server import GatewayServer
from meterd.lifecycle import InactivityTimer
from meterd.observability.logger import get_logger
from meterd.schedule.clock import SystemClock
from meterd.schedule.scheduler import AdmissionScheduler

log = get_logger(__name__)


class Daemon:
    """The running service: scheduler, gateway and inactivity policy."""

    def __init__(
        self,
        settings: Settings,
        *,
        inactivity_timeout_s: Optional[float] = None,
    ) -> None:
        self._settings = settings
        timeout = (
            settings.daemon.inactivity_timeout_s
            if inactivity_timeout_s is None
            else inactivity_timeout_s
        )
        self.timer = InactivityTimer(timeout)
        self.scheduler = AdmissionScheduler.from_settings(settings, SystemClock())
        self.gateway = GatewayServer(
            self.scheduler,
            host=settings.gateway.host,
            port=settings.gateway.port,
            max_connections=settings.gateway.max_connections,
            activity=self.timer,
        )
        self._stop = asyncio.Event()

    def request_stop(self, reason: str = "requested") -> None:
        log.info("daemon.stop_requested", reason=reason)
        self._stop.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or no signal support on this platform.
                log.debug("daemon.signal_handler_unavailable", signal=sig.name)

    async def run(self) -> int:
        log.info(
            "daemon.starting",
            inactivity_timeout_s=self.timer.timeout_s,
            host=self._settings.gateway.host,
            port=self._settings.gateway.port,
        )
        self._install_signal_handlers()
        await self.scheduler.start()
        await self.gateway.start()
        self.timer.start()

        expired = asyncio.create_task(self.timer.expired.wait())
        stopped = asyncio.create_task(self._stop.wait())
        try:
            await asyncio.wait({expired, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (expired, stopped):
                task.cancel()
            self.timer.cancel()
            await self.gateway.shutdown()
            await self.scheduler.stop()
            log.info("daemon.stopped")
        return 0
