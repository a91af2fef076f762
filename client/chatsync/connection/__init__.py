"""Duplex connection: STOMP codec, transports and the connection manager."""
from .manager import (
    ConnectionManager,
    ConnectionState,
    StateChange,
    TopicSubscription,
    reconnect_delay,
)
from .stomp import Frame
from .transport import Transport, WebSocketTransport

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "StateChange",
    "TopicSubscription",
    "reconnect_delay",
    "Frame",
    "Transport",
    "WebSocketTransport",
]
