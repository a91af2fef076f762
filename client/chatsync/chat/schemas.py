"""Pydantic schemas for chat messages, presence and the reconciled state.

Field names follow the server's JSON (camelCase) so models round-trip
through the wire and the local cache without renaming.

These schemas are used by:
    - normalizer: inbound payload -> ChatEvent
    - StateReconciler: ChatState snapshots and the message cache
    - CommandBuilder: outbound payloads
    - chat.router: the local UI bridge
"""
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

UserId = Union[int, str]

DEFAULT_ROOM = "general"


class MessageType(str, Enum):
    """Kind of a chat message event.

    Attributes:
        CHAT: Regular text message (room or private).
        JOIN: A user joined the chat.
        LEAVE: A user left the chat.
        TYPING: Typing ping.
    """
    CHAT = "CHAT"
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    TYPING = "TYPING"


def local_message_id() -> str:
    """Id for a message that arrived without one: ``local_<ms>_<random>``."""
    return f"local_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def timestamp_ms(value: Union[str, int, float, None]) -> Optional[float]:
    """Convert a wire timestamp to epoch milliseconds.

    Accepts epoch milliseconds (number or numeric string) and ISO-8601
    text, with or without a trailing ``Z``. Naive ISO values are taken
    as UTC.

    Returns:
        Milliseconds since the epoch, or None if the value is unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return None
    try:
        return float(text)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp() * 1000.0


class Message(BaseModel):
    """A chat message as kept in the local message list.

    Attributes:
        id: Unique message id (server-assigned, or ``local_...``).
        type: Message kind (CHAT, JOIN, LEAVE, TYPING).
        sender: Sender's username.
        senderId: Sender's user id.
        receiverId: Receiver's user id (private messages only).
        roomId: Room the message belongs to (room messages only).
        content: Message text.
        timestamp: Sortable textual (ISO-8601) or numeric timestamp.
        isPrivate: True when delivered on the private queue.
    """
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=local_message_id, description="Unique message id")
    type: MessageType = Field(default=MessageType.CHAT, description="Message kind")
    sender: str = Field(default="", description="Sender username")
    senderId: Optional[UserId] = Field(default=None, description="Sender user id")
    receiverId: Optional[UserId] = Field(default=None, description="Receiver user id")
    roomId: Optional[str] = Field(default=None, description="Room id")
    content: str = Field(default="", description="Message text")
    timestamp: Union[str, float, int] = Field(default_factory=utc_now_iso)
    isPrivate: bool = Field(default=False, description="Delivered on the private queue")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        if value is None or value == "":
            return local_message_id()
        return str(value)

    @field_validator("roomId", mode="before")
    @classmethod
    def _coerce_room(cls, value):
        return None if value is None else str(value)

    @field_validator("sender", "content", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return "" if value is None else value

    @property
    def epoch_ms(self) -> Optional[float]:
        return timestamp_ms(self.timestamp)


class User(BaseModel):
    """A user in the active-user directory.

    Absent fields default to offline with no unread messages.
    """
    model_config = ConfigDict(extra="ignore")

    id: UserId
    username: str = ""
    email: Optional[str] = None
    online: bool = False
    lastSeen: Optional[str] = None
    profilePictureUrl: Optional[str] = None
    unreadCount: int = 0

    @field_validator("online", mode="before")
    @classmethod
    def _online_default(cls, value):
        return bool(value) if value is not None else False

    @field_validator("unreadCount", mode="before")
    @classmethod
    def _unread_default(cls, value):
        return value if value is not None else 0

    @field_validator("lastSeen", mode="before")
    @classmethod
    def _last_seen_text(cls, value):
        return None if value is None else str(value)

    @property
    def key(self) -> str:
        return str(self.id)


class Room(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Union[int, str]
    name: str


DEFAULT_ROOMS = [Room(id=1, name=DEFAULT_ROOM)]


# =============================================================================
# Events
# =============================================================================


class MessageEvent(BaseModel):
    """A Chat, Join, Leave or Typing event (see ``message.type``)."""
    kind: Literal["message"] = "message"
    message: Message


class PresenceSnapshot(BaseModel):
    """The complete current user list; replaces the directory wholesale."""
    kind: Literal["presence"] = "presence"
    users: List[User] = Field(default_factory=list)


ChatEvent = Annotated[Union[MessageEvent, PresenceSnapshot], Field(discriminator="kind")]


# =============================================================================
# Reconciled state
# =============================================================================


class ChatState(BaseModel):
    """Immutable snapshot of the reconciled chat state.

    Attributes:
        messages: Ordered, unique-by-id message list.
        activeUsers: Directory keyed by str(user id).
        rooms: Known rooms.
        selectedRoom: Active room, or None while a user is selected.
        selectedUser: Active private conversation, or None.
        connected: Whether the connection is CONNECTED.
    """
    model_config = ConfigDict(frozen=True)

    messages: List[Message] = Field(default_factory=list)
    activeUsers: Dict[str, User] = Field(default_factory=dict)
    rooms: List[Room] = Field(default_factory=lambda: list(DEFAULT_ROOMS))
    selectedRoom: Optional[str] = DEFAULT_ROOM
    selectedUser: Optional[User] = None
    connected: bool = False
