"""
gateway/protocol.py — Gateway WebSocket Message Protocol

Typed message schema for all client↔daemon communication.
Every message is JSON with a `type` field, a short unique `id` and a
`data` payload. Replies carry the request id in data.reply_to.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    """All supported message types in the gateway protocol."""

    # Client → Server
    ENTRY_SUBMIT     = "entry.submit"
    ENTRY_REMOVE     = "entry.remove"
    ENTRY_UPDATE     = "entry.update"
    HOLD_ADD         = "hold.add"
    HOLD_REMOVE      = "hold.remove"
    USAGE_REPORT     = "usage.report"
    SUBSCRIBE        = "subscribe"
    CONDITION_SET    = "condition.set"
    STATUS           = "status"
    PING             = "ping"

    # Server → Client
    ENTRY_SUBMITTED  = "entry.submitted"
    ACK              = "ack"
    STATE_CHANGED    = "state.changed"
    STATUS_REPORT    = "status.report"
    ERROR            = "error"
    PONG             = "pong"


# ─────────────────────────────────────────────────────────────────────────────
# Base message
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class GatewayMessage:
    """
    Universal message envelope for the gateway protocol.

    All fields are optional except `type`. Payload goes in `data`.
    """
    type: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    data: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to JSON string, dropping None fields."""
        d = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(d)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "GatewayMessage":
        """Parse a JSON string into a GatewayMessage. Raises ValueError."""
        d = json.loads(raw)
        if not isinstance(d, dict):
            raise ValueError("message must be a JSON object")
        data = d.get("data") or {}
        if not isinstance(data, dict):
            raise ValueError("message data must be a JSON object")
        return cls(
            type=d.get("type", "error"),
            id=d.get("id") or str(uuid.uuid4())[:8],
            data=data,
        )

    @property
    def reply_to(self) -> Optional[str]:
        return self.data.get("reply_to")


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers: server → client messages
# ─────────────────────────────────────────────────────────────────────────────

def _reply_data(reply_to: Optional[str], **fields: Any) -> dict[str, Any]:
    data: dict[str, Any] = dict(fields)
    if reply_to:
        data["reply_to"] = reply_to
    return data


def make_entry_submitted(entry: dict, *, reply_to: Optional[str] = None) -> GatewayMessage:
    """Build an ENTRY_SUBMITTED reply carrying the new entry."""
    return GatewayMessage(
        type=MessageType.ENTRY_SUBMITTED.value,
        data=_reply_data(reply_to, entry=entry),
    )


def make_ack(*, reply_to: Optional[str] = None, **extra: Any) -> GatewayMessage:
    """Build a generic ACK for requests with no other result."""
    return GatewayMessage(
        type=MessageType.ACK.value,
        data=_reply_data(reply_to, **extra),
    )


def make_state_changed(changes: list[tuple[str, str]]) -> GatewayMessage:
    """Build an unsolicited STATE_CHANGED notification."""
    return GatewayMessage(
        type=MessageType.STATE_CHANGED.value,
        data={
            "changes": [
                {"entry_id": entry_id, "state": state} for entry_id, state in changes
            ],
        },
    )


def make_status_report(
    *,
    condition: dict,
    entries: list[dict],
    stats: dict,
    reply_to: Optional[str] = None,
) -> GatewayMessage:
    """Build a STATUS_REPORT reply."""
    return GatewayMessage(
        type=MessageType.STATUS_REPORT.value,
        data=_reply_data(reply_to, condition=condition, entries=entries, stats=stats),
    )


def make_error(
    code: str,
    message: str,
    *,
    reply_to: Optional[str] = None,
) -> GatewayMessage:
    """Build an ERROR message."""
    return GatewayMessage(
        type=MessageType.ERROR.value,
        data=_reply_data(reply_to, code=code, message=message),
    )


def make_pong(*, reply_to: Optional[str] = None) -> GatewayMessage:
    """Build a PONG keepalive response."""
    return GatewayMessage(type=MessageType.PONG.value, data=_reply_data(reply_to))
