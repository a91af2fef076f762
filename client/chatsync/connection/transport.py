"""Duplex transports carrying STOMP frames.

The connection manager only talks to the ``Transport`` interface, so
tests can substitute an in-memory transport for the WebSocket one.

    - open(): perform the socket + STOMP handshake, return CONNECTED frame
    - send(): write one frame (or a heart-beat when frame is None)
    - receive(): wait for the next websocket message, return its frames
    - close(): best-effort graceful shutdown, never raises
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from chatsync.errors import AuthError, ProtocolError, TransportError

from .stomp import (
    HEARTBEAT,
    Frame,
    connect_frame,
    disconnect_frame,
    encode_frame,
    split_frames,
)

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Abstract duplex frame transport."""

    @abstractmethod
    async def open(self, headers: Dict[str, str], heartbeat: Tuple[int, int]) -> Frame:
        """Open the connection and complete the STOMP handshake.

        Args:
            headers: Extra CONNECT headers (authorization, client info).
            heartbeat: (outgoing_ms, incoming_ms) offered to the server.

        Returns:
            The server's CONNECTED frame.

        Raises:
            TransportError: If the socket cannot be opened or closes early.
            AuthError: If the server rejects the credential.
        """

    @abstractmethod
    async def send(self, frame: Optional[Frame]) -> None:
        """Send a frame, or a heart-beat when ``frame`` is None.

        Raises:
            TransportError: If the socket is closed or the write fails.
        """

    @abstractmethod
    async def receive(self) -> Tuple[List[Frame], int]:
        """Wait for the next inbound message.

        Returns:
            Tuple of (frames, heartbeats) contained in the message.

        Raises:
            TransportError: If the socket closes.
            ProtocolError: If the message holds an undecodable frame.
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""


class WebSocketTransport(Transport):
    """STOMP over a plain WebSocket using the ``websockets`` client."""

    def __init__(self, url: str, open_timeout: float = 10.0):
        self.url = url
        self.open_timeout = open_timeout
        self._ws = None
        self._closed = False

    async def open(self, headers: Dict[str, str], heartbeat: Tuple[int, int]) -> Frame:
        try:
            self._ws = await websockets.connect(
                self.url,
                subprotocols=["v12.stomp"],
                open_timeout=self.open_timeout,
                # STOMP carries its own heart-beats
                ping_interval=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise TransportError(f"WebSocket connect to {self.url} failed: {e}") from e

        host = urlparse(self.url).hostname or "localhost"
        await self.send(connect_frame(host, headers, heartbeat))

        frames: List[Frame] = []
        while not frames:
            frames, _ = await self.receive()
        reply = frames[0]
        if reply.command == "CONNECTED":
            return reply
        message = reply.headers.get("message", "STOMP error")
        await self.close()
        if reply.command == "ERROR" and _looks_like_auth_failure(message):
            raise AuthError(f"Handshake rejected: {message}")
        raise TransportError(f"Handshake failed: {reply.command} {message}")

    async def send(self, frame: Optional[Frame]) -> None:
        if self._ws is None or self._closed:
            raise TransportError("WebSocket is not open")
        text = HEARTBEAT if frame is None else encode_frame(frame)
        try:
            await self._ws.send(text)
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed while sending: {e}") from e

    async def receive(self) -> Tuple[List[Frame], int]:
        if self._ws is None or self._closed:
            raise TransportError("WebSocket is not open")
        try:
            data = await self._ws.recv()
        except ConnectionClosed as e:
            raise TransportError(f"WebSocket closed: {e}") from e
        if isinstance(data, bytes):
            try:
                data = data.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolError(f"Binary frame is not UTF-8: {e}")
        return split_frames(data)

    async def close(self) -> None:
        if self._closed or self._ws is None:
            self._closed = True
            return
        try:
            await self._ws.send(encode_frame(disconnect_frame()))
        except Exception as e:
            logger.debug(f"DISCONNECT frame not delivered: {e}")
        self._closed = True
        try:
            await self._ws.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")


def _looks_like_auth_failure(message: str) -> bool:
    lowered = message.lower()
    return any(word in lowered for word in ("auth", "token", "unauthorized", "forbidden", "401", "403"))
