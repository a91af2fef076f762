"""Shared test fixtures for the chat client tests."""
import asyncio
import json
from typing import Callable, List, Optional

import pytest

from chatsync.auth import Credential, SessionIdentity, StaticCredentialProvider
from chatsync.config import ConnectionSettings
from chatsync.connection import ConnectionManager, Frame, Transport
from chatsync.errors import TransportError
from chatsync.storage import LocalStore


class FakeTransport(Transport):
    """In-memory transport driven by the test.

    ``open()`` waits on ``gate`` (when set) and then either raises
    ``fail`` or returns a CONNECTED frame advertising ``heartbeat``.
    Inbound messages are fed through ``push_*`` helpers.
    """

    def __init__(
        self,
        fail: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        heartbeat: str = "0,0",
    ):
        self.fail = fail
        self.gate = gate
        self.heartbeat = heartbeat
        self.sent: List[Optional[Frame]] = []
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.open_headers = None
        self.offered = None

    async def open(self, headers, heartbeat):
        self.open_headers = headers
        self.offered = heartbeat
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        return Frame("CONNECTED", {"version": "1.2", "heart-beat": self.heartbeat, "session": "s-1"})

    async def send(self, frame):
        if self.closed:
            raise TransportError("transport closed")
        self.sent.append(frame)

    async def receive(self):
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True

    # -- Test helpers ---------------------------------------------------------

    def subscriptions(self) -> dict:
        """Active SUBSCRIBE frames as {destination: id}, minus UNSUBSCRIBEs."""
        active = {}
        for frame in self.sent:
            if frame is None:
                continue
            if frame.command == "SUBSCRIBE":
                active[frame.headers["destination"]] = frame.headers["id"]
            elif frame.command == "UNSUBSCRIBE":
                active = {d: i for d, i in active.items() if i != frame.headers["id"]}
        return active

    def sends(self, destination: Optional[str] = None) -> List[Frame]:
        return [
            f for f in self.sent
            if f is not None and f.command == "SEND"
            and (destination is None or f.destination == destination)
        ]

    def push(self, destination: str, payload, raw: Optional[str] = None) -> None:
        sub_id = self.subscriptions()[destination]
        body = raw if raw is not None else json.dumps(payload)
        frame = Frame("MESSAGE", {"subscription": sub_id, "destination": destination}, body)
        self.inbound.put_nowait(([frame], 0))

    def push_heartbeat(self) -> None:
        self.inbound.put_nowait(([], 1))

    def drop(self, message: str = "socket closed") -> None:
        self.inbound.put_nowait(TransportError(message))


class FakeTransportFactory:
    """Creates FakeTransports; the first ``fail_next`` attempts fail."""

    def __init__(self):
        self.created: List[FakeTransport] = []
        self.fail_next = 0
        self.gate: Optional[asyncio.Event] = None
        self.heartbeat = "0,0"

    def __call__(self) -> FakeTransport:
        fail = None
        if self.fail_next:
            self.fail_next -= 1
            fail = TransportError("connection refused")
        transport = FakeTransport(fail=fail, gate=self.gate, heartbeat=self.heartbeat)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def identity():
    return SessionIdentity(id=7, username="ana")


@pytest.fixture
def credentials(identity):
    return StaticCredentialProvider(Credential(token="tok-123", refresh_token="ref-456"), identity)


@pytest.fixture
def fast_settings():
    """Connection settings scaled down to milliseconds."""
    return ConnectionSettings(
        heartbeat_outgoing_ms=50,
        heartbeat_incoming_ms=50,
        heartbeat_tolerance=2.0,
        reconnect_base_delay_ms=10,
        reconnect_cap_delay_ms=30,
        max_reconnect_attempts=3,
        join_settle_delay_ms=10,
        handshake_timeout_seconds=1.0,
    )


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def manager(credentials, factory, fast_settings):
    mgr = ConnectionManager(credentials, factory, fast_settings)
    yield mgr
    mgr.state_changes.clear()
    mgr.connection.clear()


@pytest.fixture
def store():
    """In-memory LocalStore."""
    local = LocalStore(db_path=":memory:")
    yield local
    local.close()
