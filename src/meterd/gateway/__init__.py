"""
gateway/ — WebSocket IPC between download clients and the scheduler daemon.
"""

from meterd.gateway.protocol import GatewayMessage, MessageType

__all__ = ["GatewayMessage", "MessageType"]
