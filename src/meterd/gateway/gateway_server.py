"""
gateway/gateway_server.py — WebSocket Gateway Server

Local IPC transport between download clients and the AdmissionScheduler.
Uses the `websockets` library. Each WebSocket connection is one client:
entries it submits are owned by it and are removed when it disconnects.
The server also serves as the scheduler's PeerManager, so entries whose
owner is no longer connected are reaped during evaluation.

Usage:
    server = GatewayServer(scheduler, host="127.0.0.1", port=9191, activity=timer)
    await server.start()          # starts listening
    ...
    await server.shutdown()
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import websockets
from websockets.asyncio.server import ServerConnection, serve

from meterd.exceptions import EntryNotFoundError, MeterdError, SchedulerFullError
from meterd.gateway.protocol import (
    GatewayMessage,
    MessageType,
    make_ack,
    make_entry_submitted,
    make_error,
    make_pong,
    make_state_changed,
    make_status_report,
)
from meterd.lifecycle import InactivityTimer
from meterd.observability.logger import bind_client, clear_client, get_logger
from meterd.schedule.condition import load_condition
from meterd.schedule.entry import EntryState
from meterd.schedule.scheduler import AdmissionScheduler, StateChanges

log = get_logger(__name__)


@dataclass
class ClientConnection:
    client_id: str
    websocket: ServerConnection
    subscribed: bool = False
    subscribe_all: bool = False


class GatewayServer:
    """
    WebSocket gateway server.

    Accepts WebSocket connections, routes JSON requests to the scheduler and
    pushes STATE_CHANGED notifications to subscribed clients.
    """

    def __init__(
        self,
        scheduler: AdmissionScheduler,
        *,
        host: str = "127.0.0.1",
        port: int = 9191,
        max_connections: int = 64,
        activity: Optional[InactivityTimer] = None,
    ):
        self._scheduler = scheduler
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._activity = activity
        self._server = None
        self._unsubscribe: Optional[Callable[[], None]] = None

        self._clients: dict[str, ClientConnection] = {}
        self._entry_owners: dict[str, str] = {}
        self._send_tasks: set[asyncio.Task] = set()
        # condition.set requests are numbered on arrival; a load that finishes
        # after a newer request was committed is discarded.
        self._condition_issued = 0
        self._condition_committed = 0

        self._routes: dict[str, Callable[[ClientConnection, GatewayMessage], Awaitable[None]]] = {
            MessageType.PING.value:          self._handle_ping,
            MessageType.ENTRY_SUBMIT.value:  self._handle_entry_submit,
            MessageType.ENTRY_REMOVE.value:  self._handle_entry_remove,
            MessageType.ENTRY_UPDATE.value:  self._handle_entry_update,
            MessageType.HOLD_ADD.value:      self._handle_hold_add,
            MessageType.HOLD_REMOVE.value:   self._handle_hold_remove,
            MessageType.USAGE_REPORT.value:  self._handle_usage_report,
            MessageType.SUBSCRIBE.value:     self._handle_subscribe,
            MessageType.CONDITION_SET.value: self._handle_condition_set,
            MessageType.STATUS.value:        self._handle_status,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the WebSocket server and attach to the scheduler."""
        self._server = await serve(
            self._handler,
            self._host,
            self._port,
            max_size=2**16,
        )
        self._scheduler.peers = self
        self._unsubscribe = self._scheduler.subscribe(self._on_state_changed)
        log.info(
            "gateway.started",
            host=self._host,
            port=self.port,
            max_connections=self._max_connections,
        )

    @property
    def port(self) -> int:
        """The bound port (useful when started with port=0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    @property
    def url(self) -> str:
        return f"ws://{self._host}:{self.port}"

    async def wait_closed(self) -> None:
        """Block until the server is closed."""
        if self._server:
            await self._server.wait_closed()

    async def shutdown(self) -> None:
        """Gracefully shut down the server."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        if self._send_tasks:
            await asyncio.gather(*self._send_tasks, return_exceptions=True)
        log.info("gateway.stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # PeerManager
    # ─────────────────────────────────────────────────────────────────────────

    def is_alive(self, owner: str) -> bool:
        return owner in self._clients

    @property
    def client_count(self) -> int:
        return len(self._clients)

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, websocket: ServerConnection) -> None:
        """Handle a single WebSocket connection."""
        if len(self._clients) >= self._max_connections:
            err = make_error("max_connections", "Server at connection limit.")
            await websocket.send(err.to_json())
            await websocket.close()
            return

        conn = ClientConnection(client_id=f"c-{uuid.uuid4().hex[:8]}", websocket=websocket)
        self._clients[conn.client_id] = conn
        if self._activity is not None:
            self._activity.hold()
        bind_client(conn.client_id)
        remote = getattr(websocket, "remote_address", ("?", 0))
        log.info("gateway.client_connected", remote=str(remote))

        try:
            async for raw in websocket:
                try:
                    msg = GatewayMessage.from_json(raw)
                except ValueError as e:
                    err = make_error("parse_error", str(e))
                    await websocket.send(err.to_json())
                    continue
                await self._route(conn, msg)
        except websockets.ConnectionClosed:
            pass
        finally:
            del self._clients[conn.client_id]
            self._scheduler.remove_entries_for_owner(conn.client_id)
            if self._activity is not None:
                self._activity.release()
            log.info("gateway.client_disconnected", remote=str(remote))
            clear_client()

    # ─────────────────────────────────────────────────────────────────────────
    # Message router
    # ─────────────────────────────────────────────────────────────────────────

    async def _route(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        """Route an incoming message to the appropriate handler."""
        if self._activity is not None:
            self._activity.touch()

        handler = self._routes.get(msg.type)
        if handler is None:
            err = make_error("unknown_type", f"Unknown message type: {msg.type}",
                             reply_to=msg.id)
            await conn.websocket.send(err.to_json())
            return

        try:
            await handler(conn, msg)
        except EntryNotFoundError as e:
            await conn.websocket.send(make_error("not_found", str(e), reply_to=msg.id).to_json())
        except SchedulerFullError as e:
            await conn.websocket.send(make_error("limit_exceeded", str(e), reply_to=msg.id).to_json())
        except MeterdError as e:
            await conn.websocket.send(make_error("failed", str(e), reply_to=msg.id).to_json())
        except (KeyError, TypeError, ValueError) as e:
            log.debug("gateway.invalid_request", type=msg.type, error=str(e))
            err = make_error("invalid_request", f"Invalid {msg.type} request: {e}", reply_to=msg.id)
            await conn.websocket.send(err.to_json())

    async def _reply(self, conn: ClientConnection, resp: GatewayMessage) -> None:
        await conn.websocket.send(resp.to_json())

    def _owned_entry(self, conn: ClientConnection, msg: GatewayMessage) -> str:
        entry_id = str(msg.data["entry_id"])
        self._scheduler.get_entry(entry_id)
        if self._entry_owners.get(entry_id) != conn.client_id:
            raise PermissionError(entry_id)
        return entry_id

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _handle_ping(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        await self._reply(conn, make_pong(reply_to=msg.id))

    async def _handle_entry_submit(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        priority = int(msg.data.get("priority", 0))
        resumable = bool(msg.data.get("resumable", False))
        entry = self._scheduler.submit_entry(
            conn.client_id, priority=priority, resumable=resumable,
        )
        self._entry_owners[entry.entry_id] = conn.client_id
        await self._reply(conn, make_entry_submitted(entry.to_dict(), reply_to=msg.id))

    async def _handle_entry_remove(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        try:
            entry_id = self._owned_entry(conn, msg)
        except PermissionError:
            await self._reply(conn, self._not_owner(msg))
            return
        self._scheduler.remove_entry(entry_id)
        await self._reply(conn, make_ack(reply_to=msg.id, entry_id=entry_id))

    async def _handle_entry_update(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        try:
            entry_id = self._owned_entry(conn, msg)
        except PermissionError:
            await self._reply(conn, self._not_owner(msg))
            return
        priority = msg.data.get("priority")
        resumable = msg.data.get("resumable")
        entry = self._scheduler.update_entry(
            entry_id,
            priority=int(priority) if priority is not None else None,
            resumable=bool(resumable) if resumable is not None else None,
        )
        await self._reply(conn, make_ack(reply_to=msg.id, entry=entry.to_dict()))

    async def _handle_hold_add(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        # Holds may be placed by any client (policy actors), not just the owner.
        entry_id = str(msg.data["entry_id"])
        hold_id = str(msg.data.get("hold_id") or conn.client_id)
        self._scheduler.add_hold(entry_id, hold_id)
        await self._reply(conn, make_ack(reply_to=msg.id, entry_id=entry_id, hold_id=hold_id))

    async def _handle_hold_remove(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        entry_id = str(msg.data["entry_id"])
        hold_id = str(msg.data.get("hold_id") or conn.client_id)
        if not self._scheduler.remove_hold(entry_id, hold_id):
            err = make_error("not_found", f"Entry ‘{entry_id}’ has no hold ‘{hold_id}’.",
                             reply_to=msg.id)
            await self._reply(conn, err)
            return
        await self._reply(conn, make_ack(reply_to=msg.id, entry_id=entry_id, hold_id=hold_id))

    async def _handle_usage_report(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        try:
            entry_id = self._owned_entry(conn, msg)
        except PermissionError:
            await self._reply(conn, self._not_owner(msg))
            return
        self._scheduler.report_usage(entry_id, int(msg.data["bytes"]))
        await self._reply(conn, make_ack(reply_to=msg.id, entry_id=entry_id))

    async def _handle_subscribe(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        conn.subscribed = True
        conn.subscribe_all = bool(msg.data.get("all", False))
        await self._reply(conn, make_ack(reply_to=msg.id, all=conn.subscribe_all))

    async def _handle_condition_set(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        data = msg.data
        self._condition_issued += 1
        seq = self._condition_issued
        condition = await asyncio.to_thread(
            load_condition,
            connected=bool(data["connected"]),
            metered=bool(data.get("metered", False)),
            tariff_path=data.get("tariff_path"),
            allow_downloads=bool(data.get("allow_downloads", True)),
            allow_downloads_when_metered=bool(data.get("allow_downloads_when_metered", True)),
        )
        if seq > self._condition_committed:
            self._condition_committed = seq
            self._scheduler.set_condition(condition)
        else:
            log.debug("gateway.condition_superseded", seq=seq, committed=self._condition_committed)
            condition = self._scheduler.condition
        await self._reply(conn, make_ack(reply_to=msg.id, condition=condition.describe()))

    async def _handle_status(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        stats = self._scheduler.stats
        resp = make_status_report(
            condition=self._scheduler.condition.describe(),
            entries=self._scheduler.list_entries(),
            stats={
                "evaluations": stats.evaluations,
                "triggers": stats.triggers,
                "coalesced_triggers": stats.coalesced_triggers,
                "reaped_entries": stats.reaped_entries,
                "usage_current_period": self._scheduler.usage_for_current_period(),
                "clients": self.client_count,
            },
            reply_to=msg.id,
        )
        await self._reply(conn, resp)

    @staticmethod
    def _not_owner(msg: GatewayMessage) -> GatewayMessage:
        return make_error(
            "not_owner",
            f"Entry ‘{msg.data.get('entry_id')}’ belongs to another client.",
            reply_to=msg.id,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Notifications
    # ─────────────────────────────────────────────────────────────────────────

    def _on_state_changed(self, changes: StateChanges) -> None:
        """Scheduler diff listener: fan out to subscribed clients."""
        if self._activity is not None:
            self._activity.touch()

        per_client: dict[str, list[tuple[str, str]]] = {}
        for entry_id, state in changes:
            owner = self._entry_owners.get(entry_id)
            if state is EntryState.REMOVED:
                self._entry_owners.pop(entry_id, None)
            for conn in self._clients.values():
                if conn.subscribed and (conn.subscribe_all or conn.client_id == owner):
                    per_client.setdefault(conn.client_id, []).append((entry_id, state.value))

        for client_id, client_changes in per_client.items():
            conn = self._clients[client_id]
            self._spawn_send(conn, make_state_changed(client_changes))

    def _spawn_send(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        task = asyncio.get_running_loop().create_task(self._safe_send(conn, msg))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _safe_send(self, conn: ClientConnection, msg: GatewayMessage) -> None:
        try:
            await conn.websocket.send(msg.to_json())
        except websockets.ConnectionClosed:
            log.debug("gateway.notify_dropped", client_id=conn.client_id)
