"""Connection manager for the chat client's duplex session.

This module owns the transport lifecycle: STOMP handshake, heart-beats,
reconnect with linear backoff, and teardown. Everything above it
(topic router, command builder, reconciler) reacts to its observers.

State machine:

    DISCONNECTED --connect()--------------> CONNECTING
    CONNECTING   --CONNECTED frame--------> CONNECTED
    CONNECTING   --handshake/socket error-> RECONNECTING (attempts < max)
                                          | FAILED       (attempts exhausted)
    CONNECTED    --socket closed / missed heart-beat --> RECONNECTING
    RECONNECTING --backoff timer----------> CONNECTING
    FAILED       --connect()--------------> CONNECTING
    any          --disconnect()-----------> DISCONNECTED

Backoff delay for attempt N is min(base_delay * N, cap_delay). The
attempt counter resets only on reaching CONNECTED (or on a manual
connect() out of DISCONNECTED/FAILED).

Concurrency:
    All work runs on one asyncio event loop. connect(), disconnect()
    and publish() are plain methods that return immediately; socket I/O
    happens in tasks owned by the manager. Each connection attempt gets
    a generation number, and callbacks from an older generation are
    ignored, so a handshake that completes after disconnect() is
    discarded.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from chatsync.auth import CredentialProvider
from chatsync.config import ConnectionSettings
from chatsync.errors import AuthError, ChatSyncError, ProtocolError, PublishRejected, TransportError
from chatsync.observers import Observable

from .stomp import (
    Frame,
    negotiate_heartbeat,
    parse_heartbeat,
    send_frame,
    subscribe_frame,
    unsubscribe_frame,
)
from .transport import Transport

logger = logging.getLogger(__name__)

# =============================================================================
# Data Models
# =============================================================================


class ConnectionState(str, Enum):
    """Lifecycle state of the duplex connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


# Legal transitions; anything else is a bug and is refused
TRANSITIONS: Dict[ConnectionState, Set[ConnectionState]] = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.RECONNECTING,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {ConnectionState.RECONNECTING, ConnectionState.DISCONNECTED},
    ConnectionState.RECONNECTING: {
        ConnectionState.CONNECTING,
        ConnectionState.FAILED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.FAILED: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


@dataclass(frozen=True)
class StateChange:
    """Payload published on every state transition."""
    old: ConnectionState
    new: ConnectionState
    attempt: int = 0


@dataclass
class TopicSubscription:
    """A (destination, handler) pair bound to one CONNECTED session."""
    id: str
    destination: str
    handler: Callable[[Frame], None]


TransportFactory = Callable[[], Transport]


def reconnect_delay(attempt: int, base_delay_ms: int, cap_delay_ms: int) -> float:
    """Backoff delay in seconds for the given 1-based attempt number."""
    return min(base_delay_ms * max(attempt, 1), cap_delay_ms) / 1000.0


# =============================================================================
# Connection Manager
# =============================================================================


class ConnectionManager:
    """Owns one logical connection to the chat server.

    Observers (all ``Observable``):
        - state_changes: StateChange on every transition
        - connection: bool, True on entering CONNECTED, False on leaving it
          and on every failed attempt
        - errors: ChatSyncError for every transport/handshake failure
        - settled: fired once per CONNECTED session after the join settle
          delay; the command builder sends the join command from here

    Attributes:
        state: Current ConnectionState.
        reconnect_attempts: Attempts made since the last CONNECTED.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        transport_factory: TransportFactory,
        settings: Optional[ConnectionSettings] = None,
        client_type: str = "python",
    ) -> None:
        self.credentials = credentials
        self.transport_factory = transport_factory
        self.settings = settings or ConnectionSettings()
        self.client_type = client_type

        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0

        self.state_changes: Observable[StateChange] = Observable("connection-state")
        self.connection: Observable[bool] = Observable("connection")
        self.errors: Observable[ChatSyncError] = Observable("connection-error")
        self.settled: Observable[None] = Observable("connection-settled")

        self._generation = 0
        self._transport: Optional[Transport] = None
        self._attempt_task: Optional[asyncio.Task] = None
        self._session_tasks: Set[asyncio.Task] = set()
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._settle_timer: Optional[asyncio.TimerHandle] = None
        self._outbound: Optional[asyncio.Queue] = None
        self._subscriptions: Dict[str, TopicSubscription] = {}
        self._next_sub_id = 0
        self._closing_tasks: Set[asyncio.Task] = set()
        self._last_inbound = 0.0
        self._last_outbound = 0.0
        self._heartbeat: Tuple[int, int] = (0, 0)
        self.session_id: Optional[str] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def connect(self) -> bool:
        """Start connecting; returns immediately.

        Returns:
            True if a connection is in progress or established afterwards,
            False if no credential is available (the state is unchanged).
        """
        if self.state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            logger.info(f"[Connection] connect() ignored, already {self.state.value}")
            return True

        credential = self.credentials.get_credential()
        if credential is None or not credential.token:
            error = AuthError("No credential available; cannot connect")
            logger.error(f"[Connection] {error}")
            self.errors.publish(error)
            return False

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.error("[Connection] connect() requires a running event loop")
            return False

        if self.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
            self.reconnect_attempts = 0
        self._cancel_reconnect_timer()
        self._begin_attempt(credential.token)
        return True

    def disconnect(self) -> None:
        """Tear everything down and land in DISCONNECTED, from any state."""
        logger.info(f"[Connection] Disconnecting (state={self.state.value})")
        # Invalidate every in-flight callback before cancelling
        self._generation += 1
        self._cancel_reconnect_timer()
        if self._attempt_task is not None:
            self._attempt_task.cancel()
            self._attempt_task = None
        self._teardown_session()
        self.reconnect_attempts = 0
        if self.state != ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.DISCONNECTED)

    def publish(self, destination: str, payload: Any) -> bool:
        """Queue a JSON payload for ``destination``.

        Returns:
            False (and logs) without touching any state if not CONNECTED.
        """
        if not self.is_connected or self._outbound is None:
            rejected = PublishRejected(destination, self.state.value)
            logger.error(f"[Connection] {rejected}")
            return False
        try:
            body = json.dumps(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"[Connection] Payload for {destination} is not JSON-serializable: {e}")
            return False
        self._outbound.put_nowait(send_frame(destination, body))
        logger.debug(f"[Connection] Queued message for {destination}")
        return True

    def subscribe(self, destination: str, handler: Callable[[Frame], None]) -> Optional[str]:
        """Subscribe ``handler`` to ``destination`` for this session.

        Returns:
            The subscription id, or None if not CONNECTED.
        """
        if not self.is_connected or self._outbound is None:
            logger.error(f"[Connection] Cannot subscribe to {destination}: not connected")
            return None
        sub_id = f"sub-{self._next_sub_id}"
        self._next_sub_id += 1
        self._subscriptions[sub_id] = TopicSubscription(sub_id, destination, handler)
        self._outbound.put_nowait(subscribe_frame(sub_id, destination))
        logger.info(f"[Connection] Subscribed to {destination} as {sub_id}")
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None:
            return
        if self.is_connected and self._outbound is not None:
            self._outbound.put_nowait(unsubscribe_frame(sub_id))

    def status(self) -> dict:
        """Debug snapshot of the connection."""
        return {
            "state": self.state.value,
            "connected": self.is_connected,
            "connecting": self.state == ConnectionState.CONNECTING,
            "reconnectAttempts": self.reconnect_attempts,
            "maxReconnectAttempts": self.settings.max_reconnect_attempts,
            "hasTransport": self._transport is not None,
            "sessionId": self.session_id,
            "subscriptions": sorted(s.destination for s in self._subscriptions.values()),
            "heartbeat": {"outgoingMs": self._heartbeat[0], "incomingMs": self._heartbeat[1]},
            "observers": {
                "stateChanges": len(self.state_changes),
                "connection": len(self.connection),
                "errors": len(self.errors),
            },
        }

    def next_reconnect_delay(self, attempt: int) -> float:
        return reconnect_delay(
            attempt,
            self.settings.reconnect_base_delay_ms,
            self.settings.reconnect_cap_delay_ms,
        )

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    def _set_state(self, new: ConnectionState) -> bool:
        old = self.state
        if new not in TRANSITIONS[old]:
            logger.error(f"[Connection] Refusing illegal transition {old.value} -> {new.value}")
            return False
        self.state = new
        logger.info(f"[Connection] {old.value} -> {new.value}")
        self.state_changes.publish(StateChange(old, new, self.reconnect_attempts))
        if new == ConnectionState.CONNECTED:
            self.connection.publish(True)
        elif new in (
            ConnectionState.RECONNECTING,
            ConnectionState.FAILED,
            ConnectionState.DISCONNECTED,
        ):
            self.connection.publish(False)
        return True

    def _begin_attempt(self, token: str) -> None:
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        self._attempt_task = asyncio.get_running_loop().create_task(
            self._handshake(generation, token)
        )

    async def _handshake(self, generation: int, token: str) -> None:
        try:
            transport = self.transport_factory()
        except Exception as e:
            self._attempt_failed(generation, None, TransportError(f"Cannot create transport: {e}"))
            return
        self._transport = transport
        identity = self.credentials.get_identity()
        headers = {
            "Authorization": f"Bearer {token}",
            "X-Client-Type": self.client_type,
            "X-Username": identity.username if identity else "unknown",
        }
        offer = (self.settings.heartbeat_outgoing_ms, self.settings.heartbeat_incoming_ms)
        logger.info(f"[Connection] Handshaking (token {token[:8]}..., attempt {self.reconnect_attempts})")
        try:
            connected = await asyncio.wait_for(
                transport.open(headers, offer),
                timeout=self.settings.handshake_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._attempt_failed(generation, transport, TransportError("Handshake timed out"))
            return
        except ChatSyncError as e:
            self._attempt_failed(generation, transport, e)
            return
        except Exception as e:
            self._attempt_failed(generation, transport, TransportError(f"Handshake failed: {e}"))
            return

        if generation != self._generation or self.state != ConnectionState.CONNECTING:
            logger.info("[Connection] Discarding late handshake completion")
            self._close_transport(transport)
            if self._transport is transport:
                self._transport = None
            return
        self._attempt_task = None
        try:
            server_heartbeat = parse_heartbeat(connected.headers.get("heart-beat"))
        except ProtocolError as e:
            logger.warning(f"[Connection] {e}; heart-beats disabled")
            server_heartbeat = (0, 0)
        self._on_connected(generation, transport, server_heartbeat, connected.headers.get("session"))

    def _attempt_failed(
        self, generation: int, transport: Optional[Transport], error: ChatSyncError
    ) -> None:
        if transport is not None:
            self._close_transport(transport)
            if self._transport is transport:
                self._transport = None
        if generation != self._generation:
            return
        logger.error(f"[Connection] Connection attempt failed: {error}")
        self._attempt_task = None
        self.errors.publish(error)
        self._schedule_reconnect()

    def _on_connected(
        self,
        generation: int,
        transport: Transport,
        server_heartbeat: Tuple[int, int],
        session_id: Optional[str],
    ) -> None:
        loop = asyncio.get_running_loop()
        self.reconnect_attempts = 0
        self.session_id = session_id
        self._outbound = asyncio.Queue()
        now = loop.time()
        self._last_inbound = now
        self._last_outbound = now
        offer = (self.settings.heartbeat_outgoing_ms, self.settings.heartbeat_incoming_ms)
        self._heartbeat = negotiate_heartbeat(offer, server_heartbeat)

        self._spawn(self._read_loop(generation, transport))
        self._spawn(self._write_loop(generation, transport))
        if self._heartbeat[0] or self._heartbeat[1]:
            self._spawn(self._heartbeat_loop(generation))

        # Observers (the topic router) subscribe synchronously here
        self._set_state(ConnectionState.CONNECTED)

        if self.state == ConnectionState.CONNECTED and generation == self._generation:
            self._settle_timer = loop.call_later(
                self.settings.join_settle_delay_ms / 1000.0,
                self._on_settled,
                generation,
            )

    def _on_settled(self, generation: int) -> None:
        self._settle_timer = None
        if generation != self._generation or not self.is_connected:
            return
        self.settled.publish(None)

    def _connection_lost(self, generation: int, error: ChatSyncError) -> None:
        if generation != self._generation or not self.is_connected:
            return
        logger.warning(f"[Connection] Connection lost: {error}")
        self._generation += 1
        self._teardown_session()
        self.errors.publish(error)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        max_attempts = self.settings.max_reconnect_attempts
        if self.reconnect_attempts >= max_attempts:
            logger.error(f"[Connection] Max reconnection attempts reached ({max_attempts})")
            self._set_state(ConnectionState.FAILED)
            return
        self.reconnect_attempts += 1
        delay = self.next_reconnect_delay(self.reconnect_attempts)
        self._set_state(ConnectionState.RECONNECTING)
        logger.info(
            f"[Connection] Reconnecting in {delay:.1f}s "
            f"(attempt {self.reconnect_attempts}/{max_attempts})"
        )
        generation = self._generation
        self._reconnect_timer = asyncio.get_running_loop().call_later(
            delay, self._on_reconnect_timer, generation
        )

    def _on_reconnect_timer(self, generation: int) -> None:
        self._reconnect_timer = None
        if generation != self._generation or self.state != ConnectionState.RECONNECTING:
            return
        credential = self.credentials.get_credential()
        if credential is None or not credential.token:
            error = AuthError("No credential available for reconnection")
            logger.error(f"[Connection] {error}")
            self.errors.publish(error)
            self._set_state(ConnectionState.FAILED)
            return
        self._begin_attempt(credential.token)

    # -------------------------------------------------------------------------
    # Session tasks
    # -------------------------------------------------------------------------

    async def _read_loop(self, generation: int, transport: Transport) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                frames, _ = await transport.receive()
            except asyncio.CancelledError:
                raise
            except ProtocolError as e:
                logger.warning(f"[Connection] Dropping undecodable message: {e}")
                self._last_inbound = loop.time()
                continue
            except ChatSyncError as e:
                self._connection_lost(generation, e)
                return
            except Exception as e:
                self._connection_lost(generation, TransportError(f"Receive failed: {e}"))
                return
            if generation != self._generation:
                return
            self._last_inbound = loop.time()
            for frame in frames:
                if generation != self._generation:
                    return
                self._dispatch(generation, frame)

    def _dispatch(self, generation: int, frame: Frame) -> None:
        if frame.command == "MESSAGE":
            sub_id = frame.headers.get("subscription", "")
            subscription = self._subscriptions.get(sub_id)
            if subscription is None:
                logger.warning(
                    f"[Connection] MESSAGE for unknown subscription {sub_id!r} "
                    f"(destination={frame.destination})"
                )
                return
            try:
                subscription.handler(frame)
            except Exception as e:
                logger.error(f"[Connection] Handler for {subscription.destination} failed: {e}")
        elif frame.command == "ERROR":
            message = frame.headers.get("message", "STOMP error")
            # Servers close the connection after an ERROR frame
            self._connection_lost(generation, TransportError(f"Server error: {message}"))
        elif frame.command == "RECEIPT":
            logger.debug(f"[Connection] Receipt {frame.headers.get('receipt-id')}")
        else:
            logger.warning(f"[Connection] Ignoring unexpected {frame.command} frame")

    async def _write_loop(self, generation: int, transport: Transport) -> None:
        queue = self._outbound
        loop = asyncio.get_running_loop()
        while True:
            frame = await queue.get()
            try:
                await transport.send(frame)
            except asyncio.CancelledError:
                raise
            except ChatSyncError as e:
                self._connection_lost(generation, e)
                return
            except Exception as e:
                self._connection_lost(generation, TransportError(f"Send failed: {e}"))
                return
            self._last_outbound = loop.time()

    async def _heartbeat_loop(self, generation: int) -> None:
        send_every_ms, expect_every_ms = self._heartbeat
        periods = [p for p in (send_every_ms, expect_every_ms) if p]
        tick = min(periods) / 1000.0 / 2
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(tick)
            if generation != self._generation:
                return
            now = loop.time()
            if send_every_ms and now - self._last_outbound >= send_every_ms / 1000.0:
                self._outbound.put_nowait(None)
                self._last_outbound = now
            if expect_every_ms:
                allowed = expect_every_ms / 1000.0 * self.settings.heartbeat_tolerance
                if now - self._last_inbound > allowed:
                    self._connection_lost(
                        generation,
                        TransportError(f"Missed heart-beat (nothing received for {allowed:.1f}s)"),
                    )
                    return

    # -------------------------------------------------------------------------
    # Teardown helpers
    # -------------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._session_tasks.add(task)
        task.add_done_callback(self._session_tasks.discard)
        return task

    def _teardown_session(self) -> None:
        if self._settle_timer is not None:
            self._settle_timer.cancel()
            self._settle_timer = None
        # Tasks may be the caller (read loop); cancelling self is safe
        for task in list(self._session_tasks):
            task.cancel()
        self._session_tasks.clear()
        if self._subscriptions:
            logger.info(f"[Connection] Dropping {len(self._subscriptions)} subscriptions")
        self._subscriptions.clear()
        self._outbound = None
        self.session_id = None
        self._heartbeat = (0, 0)
        if self._transport is not None:
            self._close_transport(self._transport)
            self._transport = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _close_transport(self, transport: Transport) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._safe_close(transport))
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    async def _safe_close(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug(f"[Connection] Error closing transport: {e}")

    async def wait_closed(self) -> None:
        """Wait for pending transport closes (used at shutdown)."""
        if self._closing_tasks:
            await asyncio.gather(*list(self._closing_tasks), return_exceptions=True)
