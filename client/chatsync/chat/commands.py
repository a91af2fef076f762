"""Outbound command builder.

Builds the payloads the server expects and publishes them through the
connection manager:

    join            /app/chat.addUser          sent once per session, after settle
    room chat       /app/chat.sendMessage      {type: CHAT, roomId}
    private chat    /app/chat.private          {type: CHAT, receiverId}
    typing ping     /app/chat.typing           {type: TYPING}
    active users    /app/chat.getActiveUsers   {} (asks for a presence snapshot)

Every command is validated first: the connection must be CONNECTED and
user-supplied content must be non-empty after trimming. A failed check
returns False; nothing is raised, retried or queued.
"""
import logging
from typing import Optional

from chatsync.auth import CredentialProvider, SessionIdentity
from chatsync.connection import ConnectionManager

from .reconciler import StateReconciler
from .schemas import DEFAULT_ROOM, MessageType, UserId, utc_now_iso

logger = logging.getLogger(__name__)

SEND_MESSAGE = "/app/chat.sendMessage"
SEND_PRIVATE = "/app/chat.private"
ADD_USER = "/app/chat.addUser"
TYPING = "/app/chat.typing"
GET_ACTIVE_USERS = "/app/chat.getActiveUsers"


class CommandBuilder:
    """Validates and publishes outbound chat commands."""

    def __init__(
        self,
        connection: ConnectionManager,
        credentials: CredentialProvider,
        reconciler: Optional[StateReconciler] = None,
    ) -> None:
        self.connection = connection
        self.credentials = credentials
        self.reconciler = reconciler

    def _sender(self, command: str) -> Optional[SessionIdentity]:
        if not self.connection.is_connected:
            logger.error(f"[Commands] Cannot {command}: not connected ({self.connection.state.value})")
            return None
        identity = self.credentials.get_identity()
        if identity is None:
            logger.error(f"[Commands] Cannot {command}: no user data")
        return identity

    @staticmethod
    def _content_ok(command: str, content: Optional[str]) -> bool:
        if content is None or not content.strip():
            logger.error(f"[Commands] Cannot {command}: message is empty")
            return False
        return True

    def join(self) -> bool:
        user = self._sender("join chat")
        if user is None:
            return False
        logger.info(f"[Commands] Joining chat as {user.username}")
        return self.connection.publish(ADD_USER, {
            "type": MessageType.JOIN.value,
            "sender": user.username,
            "senderId": user.id,
            "content": f"{user.username} joined the chat",
            "timestamp": utc_now_iso(),
        })

    def send_room_message(self, content: str, room_id: str = DEFAULT_ROOM) -> bool:
        if not self._content_ok("send message", content):
            return False
        user = self._sender("send message")
        if user is None:
            return False
        return self.connection.publish(SEND_MESSAGE, {
            "type": MessageType.CHAT.value,
            "content": content,
            "sender": user.username,
            "senderId": user.id,
            "timestamp": utc_now_iso(),
            "roomId": room_id,
        })

    def send_private_message(self, content: str, receiver_id: UserId) -> bool:
        if not self._content_ok("send private message", content):
            return False
        if receiver_id is None or str(receiver_id) == "":
            logger.error("[Commands] Cannot send private message: no receiver")
            return False
        user = self._sender("send private message")
        if user is None:
            return False
        logger.info(f"[Commands] Sending private message to user {receiver_id}")
        return self.connection.publish(SEND_PRIVATE, {
            "type": MessageType.CHAT.value,
            "content": content,
            "sender": user.username,
            "senderId": user.id,
            "receiverId": receiver_id,
            "timestamp": utc_now_iso(),
        })

    def typing(self) -> bool:
        user = self._sender("send typing ping")
        if user is None:
            return False
        return self.connection.publish(TYPING, {
            "type": MessageType.TYPING.value,
            "sender": user.username,
            "senderId": user.id,
            "content": f"{user.username} is typing...",
            "timestamp": utc_now_iso(),
        })

    def request_active_users(self) -> bool:
        if self._sender("request active users") is None:
            return False
        return self.connection.publish(GET_ACTIVE_USERS, {})

    def send(self, content: str) -> bool:
        """Send to the current selection: the selected user, else the selected room."""
        if self.reconciler is None:
            return self.send_room_message(content)
        selected_user = self.reconciler.selected_user
        if selected_user is not None:
            return self.send_private_message(content, selected_user.id)
        return self.send_room_message(content, self.reconciler.selected_room or DEFAULT_ROOM)
