"""
gateway/gateway_client.py — Async Gateway Client

Thin async client for download programs. It registers schedule entries
with the daemon and receives admission changes without importing any
scheduler internals.

Usage:
    async with GatewayClient("ws://127.0.0.1:9191") as client:
        entry = await client.submit_entry(priority=5)
        await client.subscribe()
        async for changes in client.state_changes():
            ...
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Optional

import websockets
from websockets.asyncio.client import connect

from meterd.exceptions import GatewayRequestError
from meterd.gateway.protocol import GatewayMessage, MessageType
from meterd.observability.logger import get_logger

log = get_logger(__name__)


class GatewayClient:
    """
    Async WebSocket client for the meterd gateway.

    Async context manager — auto-connects on enter, disconnects on exit.
    """

    def __init__(self, url: str = "ws://127.0.0.1:9191", timeout_s: float = 30.0):
        self._url = url
        self._timeout_s = timeout_s
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Queue] = {}  # msg_id → queue
        self._changes: asyncio.Queue = asyncio.Queue()

    async def __aenter__(self) -> "GatewayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Connect to the gateway server."""
        self._ws = await connect(self._url, max_size=2**16)
        self._reader_task = asyncio.create_task(self._reader_loop())
        log.info("gateway_client.connected", url=self._url)

    async def disconnect(self) -> None:
        """Disconnect from the gateway server."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        if self._ws:
            await self._ws.close()
            self._ws = None
        log.info("gateway_client.disconnected")

    # ─────────────────────────────────────────────────────────────────────────
    # Reader loop: dispatches incoming messages to pending queues
    # ─────────────────────────────────────────────────────────────────────────

    async def _reader_loop(self) -> None:
        """Read messages from the server and dispatch to waiting callers."""
        try:
            async for raw in self._ws:
                msg = GatewayMessage.from_json(raw)

                if msg.type == MessageType.STATE_CHANGED.value:
                    changes = [
                        (c["entry_id"], c["state"]) for c in msg.data.get("changes", [])
                    ]
                    await self._changes.put(changes)
                    continue

                reply_to = msg.reply_to
                if reply_to and reply_to in self._pending:
                    await self._pending[reply_to].put(msg)
                else:
                    log.debug("gateway_client.unsolicited", type=msg.type)
        except websockets.ConnectionClosed:
            log.warning("gateway_client.connection_lost")
        except asyncio.CancelledError:
            return

    async def _request(self, mtype: MessageType, **data: Any) -> GatewayMessage:
        """Send a request and wait for its reply. Raises GatewayRequestError."""
        msg = GatewayMessage(type=mtype.value, data=data)
        queue: asyncio.Queue = asyncio.Queue()
        self._pending[msg.id] = queue
        try:
            await self._ws.send(msg.to_json())
            resp = await asyncio.wait_for(queue.get(), timeout=self._timeout_s)
        finally:
            self._pending.pop(msg.id, None)
        if resp.type == MessageType.ERROR.value:
            raise GatewayRequestError(resp.data.get("code", "error"), resp.data.get("message", ""))
        return resp

    # ─────────────────────────────────────────────────────────────────────────
    # High-level API
    # ─────────────────────────────────────────────────────────────────────────

    async def ping(self) -> bool:
        """Send a ping and wait for pong. Returns True if healthy."""
        try:
            resp = await self._request(MessageType.PING)
            return resp.type == MessageType.PONG.value
        except (GatewayRequestError, asyncio.TimeoutError, websockets.ConnectionClosed):
            return False

    async def submit_entry(self, *, priority: int = 0, resumable: bool = False) -> dict:
        resp = await self._request(MessageType.ENTRY_SUBMIT, priority=priority, resumable=resumable)
        return resp.data["entry"]

    async def remove_entry(self, entry_id: str) -> None:
        await self._request(MessageType.ENTRY_REMOVE, entry_id=entry_id)

    async def update_entry(
        self,
        entry_id: str,
        *,
        priority: Optional[int] = None,
        resumable: Optional[bool] = None,
    ) -> dict:
        resp = await self._request(
            MessageType.ENTRY_UPDATE, entry_id=entry_id, priority=priority, resumable=resumable,
        )
        return resp.data["entry"]

    async def add_hold(self, entry_id: str, hold_id: Optional[str] = None) -> None:
        await self._request(MessageType.HOLD_ADD, entry_id=entry_id, hold_id=hold_id)

    async def remove_hold(self, entry_id: str, hold_id: Optional[str] = None) -> None:
        await self._request(MessageType.HOLD_REMOVE, entry_id=entry_id, hold_id=hold_id)

    async def report_usage(self, entry_id: str, nbytes: int) -> None:
        await self._request(MessageType.USAGE_REPORT, entry_id=entry_id, bytes=nbytes)

    async def subscribe(self, *, all_entries: bool = False) -> None:
        """Start receiving STATE_CHANGED notifications (own entries, or all)."""
        await self._request(MessageType.SUBSCRIBE, all=all_entries)

    async def set_condition(
        self,
        *,
        connected: bool,
        metered: bool = False,
        tariff_path: Optional[str] = None,
        allow_downloads: bool = True,
        allow_downloads_when_metered: bool = True,
    ) -> dict:
        resp = await self._request(
            MessageType.CONDITION_SET,
            connected=connected,
            metered=metered,
            tariff_path=tariff_path,
            allow_downloads=allow_downloads,
            allow_downloads_when_metered=allow_downloads_when_metered,
        )
        return resp.data["condition"]

    async def status(self) -> dict:
        resp = await self._request(MessageType.STATUS)
        return resp.data

    async def next_changes(self, timeout_s: Optional[float] = None) -> list[tuple[str, str]]:
        """Wait for the next STATE_CHANGED batch."""
        return await asyncio.wait_for(self._changes.get(), timeout=timeout_s or self._timeout_s)

    async def state_changes(self) -> AsyncIterator[list[tuple[str, str]]]:
        while True:
            yield await self._changes.get()
