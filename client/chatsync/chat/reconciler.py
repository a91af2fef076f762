"""State reconciler: the single mutator of local chat state.

Responsibilities:
    - Append message events, collapsing duplicates
    - Replace the active-user directory on every presence snapshot
    - Keep selectedRoom / selectedUser mutually exclusive
    - Persist the message list to the bounded local cache after every
      mutation, and restore it at startup
    - Publish a fresh ChatState snapshot to observers after each change

Duplicate rule:
    A message is a duplicate if an existing message has the same id, or
    the same sender and content with timestamps less than 1000 ms apart.
    The window collapses a locally echoed send with the server's copy.

Thread Safety:
    Mutations normally all happen on the event loop thread. A writer lock
    guards {messages, users, selection} anyway, so a caller on another
    thread can never interleave with a mutation; snapshots are taken
    under the same lock.
"""
import logging
import threading
from typing import Dict, List, Optional, Set, Union

from pydantic import ValidationError

from chatsync.observers import Observable
from chatsync.storage import MessageCache

from .schemas import (
    DEFAULT_ROOM,
    DEFAULT_ROOMS,
    ChatState,
    Message,
    MessageEvent,
    PresenceSnapshot,
    Room,
    User,
    UserId,
)

logger = logging.getLogger(__name__)

DUPLICATE_WINDOW_MS = 1000


def is_duplicate(existing: Message, incoming: Message, window_ms: float = DUPLICATE_WINDOW_MS) -> bool:
    """Apply the duplicate rule to one pair of messages."""
    if existing.id == incoming.id:
        return True
    if existing.sender != incoming.sender or existing.content != incoming.content:
        return False
    a, b = existing.epoch_ms, incoming.epoch_ms
    if a is None or b is None:
        return False
    return abs(a - b) < window_ms


class StateReconciler:
    """Owns messages, the user directory, rooms and the selection.

    Attributes:
        cache: Bounded durable message cache (None keeps state in memory only).
        changes: Observable publishing a ChatState after every mutation.
    """

    def __init__(self, cache: Optional[MessageCache] = None, max_messages: int = 1000) -> None:
        self.cache = cache
        self.max_messages = cache.max_messages if cache is not None else max_messages
        self.changes: Observable[ChatState] = Observable("chat-state")

        self._lock = threading.Lock()
        self._messages: List[Message] = []
        # JSON form of _messages, kept in step for cheap cache writes
        self._serialized: List[dict] = []
        self._ids: Set[str] = set()
        self._users: Dict[str, User] = {}
        self._rooms: List[Room] = list(DEFAULT_ROOMS)
        self._selected_room: Optional[str] = DEFAULT_ROOM
        self._selected_user: Optional[User] = None
        self._connected = False

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def load(self) -> int:
        """Restore messages from the durable cache.

        Invalid entries are skipped; a malformed cache yields an empty list.

        Returns:
            Number of messages restored.
        """
        if self.cache is None:
            return 0
        restored: List[Message] = []
        seen: Set[str] = set()
        for raw in self.cache.load():
            try:
                message = Message.model_validate(raw)
            except ValidationError as e:
                logger.warning(f"[Reconciler] Skipping cached message: {e.error_count()} error(s)")
                continue
            if message.id in seen:
                continue
            seen.add(message.id)
            restored.append(message)
        restored = restored[-self.max_messages:]
        with self._lock:
            self._messages = restored
            self._serialized = [m.model_dump(mode="json") for m in restored]
            self._ids = {m.id for m in restored}
        logger.info(f"[Reconciler] Restored {len(restored)} messages from cache")
        self._publish()
        return len(restored)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def apply_event(self, event: Union[MessageEvent, PresenceSnapshot]) -> bool:
        """Apply one normalized event.

        Returns:
            True if the state changed.
        """
        if isinstance(event, MessageEvent):
            return self.add_message(event.message)
        if isinstance(event, PresenceSnapshot):
            self.replace_users(event.users)
            return True
        logger.warning(f"[Reconciler] Ignoring unsupported event {type(event).__name__}")
        return False

    def add_message(self, message: Message) -> bool:
        """Append a message unless it duplicates one already held."""
        with self._lock:
            if message.id in self._ids or any(
                is_duplicate(existing, message) for existing in reversed(self._messages)
            ):
                logger.debug(f"[Reconciler] Duplicate message ignored: {message.id}")
                return False
            self._messages.append(message)
            self._serialized.append(message.model_dump(mode="json"))
            self._ids.add(message.id)
            overflow = len(self._messages) - self.max_messages
            if overflow > 0:
                for evicted in self._messages[:overflow]:
                    self._ids.discard(evicted.id)
                del self._messages[:overflow]
                del self._serialized[:overflow]
            self._persist()
        self._publish()
        return True

    def replace_users(self, users: List[User]) -> None:
        """Replace the whole directory; users missing from ``users`` vanish."""
        with self._lock:
            self._users = {user.key: user for user in users}
        logger.info(f"[Reconciler] Active users replaced ({len(users)} users)")
        self._publish()

    def set_rooms(self, rooms: List[Room]) -> None:
        with self._lock:
            self._rooms = list(rooms) if rooms else list(DEFAULT_ROOMS)
        self._publish()

    def set_connected(self, connected: bool) -> None:
        """Record connectivity; going offline clears the user directory."""
        with self._lock:
            if self._connected == connected and (connected or not self._users):
                return
            self._connected = connected
            if not connected:
                self._users = {}
        self._publish()

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def select_room(self, room_id: Optional[str]) -> None:
        with self._lock:
            self._selected_room = room_id
            if room_id is not None:
                self._selected_user = None
        self._publish()

    def select_user(self, user: Optional[Union[User, UserId]]) -> None:
        """Select a private conversation; accepts a User or a user id."""
        with self._lock:
            if user is not None and not isinstance(user, User):
                user = self._users.get(str(user)) or User(id=user)
            self._selected_user = user
            if user is not None:
                self._selected_room = None
        self._publish()

    # -------------------------------------------------------------------------
    # Clearing
    # -------------------------------------------------------------------------

    def clear_all(self, confirm: bool = False) -> bool:
        """Wipe in-memory messages and the persisted cache.

        Args:
            confirm: Must be True; the caller owns the confirmation prompt.

        Returns:
            True if the state was cleared.
        """
        if not confirm:
            logger.info("[Reconciler] clear_all() not confirmed; nothing cleared")
            return False
        with self._lock:
            self._messages = []
            self._serialized = []
            self._ids = set()
            if self.cache is not None:
                self.cache.clear()
        logger.info("[Reconciler] All messages cleared")
        self._publish()
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def messages(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    @property
    def active_users(self) -> Dict[str, User]:
        with self._lock:
            return dict(self._users)

    @property
    def selected_room(self) -> Optional[str]:
        return self._selected_room

    @property
    def selected_user(self) -> Optional[User]:
        return self._selected_user

    @property
    def connected(self) -> bool:
        return self._connected

    def snapshot(self) -> ChatState:
        with self._lock:
            return ChatState(
                messages=list(self._messages),
                activeUsers=dict(self._users),
                rooms=list(self._rooms),
                selectedRoom=self._selected_room,
                selectedUser=self._selected_user,
                connected=self._connected,
            )

    def room_messages(self, room_id: str) -> List[Message]:
        """Messages posted to ``room_id`` (private messages excluded)."""
        with self._lock:
            return [m for m in self._messages if m.roomId == str(room_id) and m.receiverId is None]

    def private_messages(self, user_id: UserId, other_id: UserId) -> List[Message]:
        """The private conversation between two users, both directions."""
        me, other = str(user_id), str(other_id)
        with self._lock:
            return [
                m for m in self._messages
                if m.receiverId is not None and (
                    (str(m.senderId) == me and str(m.receiverId) == other)
                    or (str(m.senderId) == other and str(m.receiverId) == me)
                )
            ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _persist(self) -> None:
        if self.cache is None:
            return
        try:
            self.cache.save(self._serialized)
        except Exception as e:
            logger.error(f"[Reconciler] Failed to persist message cache: {e}")

    def _publish(self) -> None:
        if len(self.changes):
            self.changes.publish(self.snapshot())
