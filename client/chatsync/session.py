"""Chat session: wires the connection core to the reconciled state.

A ChatSession is created explicitly for one authenticated user and has
an explicit lifecycle:

    session = ChatSession(settings, credentials, store)
    session.start()      # restore cache, attach observers, connect
    ...
    await session.stop() # disconnect, drop presence, release observers

Wiring:
    ConnectionManager.state_changes -> TopicRouter (subscribe on CONNECTED)
    TopicRouter -> normalizer -> StateReconciler.apply_event
    ConnectionManager.connection    -> StateReconciler.set_connected
                                       (+ REST refresh of rooms / users)
    ConnectionManager.settled       -> CommandBuilder.join
    ConnectionManager.errors        -> credential refresh (AuthError only)
"""
import asyncio
import logging
from typing import List, Optional, Set

from chatsync.api.client import ChatApiClient
from chatsync.auth import CredentialProvider
from chatsync.chat.commands import CommandBuilder
from chatsync.chat.reconciler import StateReconciler
from chatsync.chat.schemas import DEFAULT_ROOM, PresenceSnapshot
from chatsync.chat.topics import TopicRouter
from chatsync.config import AppSettings
from chatsync.errors import AuthError, ChatSyncError
from chatsync.connection import ConnectionManager, WebSocketTransport
from chatsync.connection.manager import TransportFactory
from chatsync.observers import Subscription
from chatsync.storage import LocalStore, MessageCache

logger = logging.getLogger(__name__)


class ChatSession:
    """One authenticated chat session with explicit start/stop."""

    def __init__(
        self,
        settings: AppSettings,
        credentials: CredentialProvider,
        store: LocalStore,
        transport_factory: Optional[TransportFactory] = None,
        api: Optional[ChatApiClient] = None,
    ) -> None:
        self.settings = settings
        self.credentials = credentials
        self.store = store
        self.api = api

        if transport_factory is None:
            ws_url = settings.server.ws_url
            timeout = settings.connection.handshake_timeout_seconds

            def transport_factory():
                return WebSocketTransport(ws_url, open_timeout=timeout)

        self.cache = MessageCache(store, max_messages=settings.cache.max_messages)
        self.reconciler = StateReconciler(self.cache)
        self.connection = ConnectionManager(credentials, transport_factory, settings.connection)
        self.router = TopicRouter(self.connection, credentials, self.reconciler.apply_event)
        self.commands = CommandBuilder(self.connection, credentials, self.reconciler)

        self.started = False
        self._handles: List[Subscription] = []
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None

    def start(self) -> bool:
        """Restore cached state, attach observers and begin connecting.

        Returns:
            The result of ``ConnectionManager.connect()``.
        """
        if not self.started:
            self.reconciler.load()
            self.router.attach()
            self._handles = [
                self.connection.connection.subscribe(self._on_connection_change),
                self.connection.settled.subscribe(self._on_settled),
                self.connection.errors.subscribe(self._on_connection_error),
            ]
            self.started = True
            logger.info("[Session] Started")
        return self.connection.connect()

    async def stop(self) -> None:
        """Disconnect and release everything ``start()`` acquired."""
        if not self.started:
            return
        for handle in self._handles:
            handle.cancel()
        self._handles = []
        self.router.detach()
        self.connection.disconnect()
        self.reconciler.set_connected(False)
        if self.reconciler.selected_user is not None:
            self.reconciler.select_room(DEFAULT_ROOM)
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.connection.wait_closed()
        self.started = False
        logger.info("[Session] Stopped")

    def status(self) -> dict:
        status = self.connection.status()
        status["messages"] = len(self.reconciler.messages)
        status["activeUsers"] = len(self.reconciler.active_users)
        status["hasCredential"] = self.credentials.get_credential() is not None
        identity = self.credentials.get_identity()
        status["user"] = identity.model_dump() if identity else None
        return status

    # -- Observers -------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_connection_change(self, connected: bool) -> None:
        self.reconciler.set_connected(connected)
        if connected and self.api is not None:
            self._spawn(self.refresh_directory())

    def _on_settled(self, _: None) -> None:
        self.commands.join()

    def _on_connection_error(self, error: ChatSyncError) -> None:
        # Rejected token only; the next attempt reads whatever is stored
        # when its backoff timer fires
        if not isinstance(error, AuthError) or self.credentials.get_credential() is None:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = self._spawn(self.refresh_credential())

    async def refresh_credential(self) -> bool:
        """Refresh the bearer credential through the provider.

        Returns:
            True if a new credential was stored. On failure the provider
            drops the stored session and the pending reconnect ends in
            FAILED for lack of a credential.
        """
        try:
            await self.credentials.refresh()
        except AuthError as e:
            logger.warning(f"[Session] Credential refresh failed: {e}")
            return False
        logger.info("[Session] Credential refreshed before reconnect")
        return True

    async def refresh_directory(self) -> None:
        """Load rooms and online users over REST after (re)connecting."""
        if self.api is None:
            return
        rooms = await self.api.get_rooms()
        if rooms:
            self.reconciler.set_rooms(rooms)
        users = await self.api.get_online_users()
        # A late answer must not repopulate presence after a disconnect
        if users is not None and self.connection.is_connected:
            self.reconciler.apply_event(PresenceSnapshot(users=users))


# Global session instance (set by the application lifespan)
_session: Optional[ChatSession] = None


def get_session() -> Optional[ChatSession]:
    """Get the global chat session, if one was started."""
    return _session


def set_session(session: Optional[ChatSession]) -> None:
    """Set (or clear) the global chat session."""
    global _session
    _session = session
