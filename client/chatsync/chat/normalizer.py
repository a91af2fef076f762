"""Inbound payload normalization.

Turns the JSON body of a STOMP MESSAGE frame into a ``ChatEvent``:

    - public / typing / private channels carry one message object with a
      ``type`` (or ``kind``) of CHAT, JOIN, LEAVE or TYPING
    - the presence channel carries the complete user list, either as a
      bare JSON array or as ``{"users": [...]}``; some servers also send
      ``{"type": "ACTIVE_USERS", "users": [...]}`` on the public topic

Anything else raises ``ProtocolError``; ``normalize_frame`` catches it,
logs a warning and returns None so the caller simply drops the frame.
"""
import json
import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from chatsync.errors import ProtocolError

from .schemas import Message, MessageEvent, MessageType, PresenceSnapshot, User

logger = logging.getLogger(__name__)

PRESENCE_TYPES = {"ACTIVE_USERS", "PRESENCE", "PRESENCE_SNAPSHOT"}

NormalizedEvent = Union[MessageEvent, PresenceSnapshot]


def parse_body(body: str) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, TypeError) as e:
        raise ProtocolError(f"Frame body is not JSON: {e}")


def _event_kind(payload: dict) -> str:
    raw = payload.get("type", payload.get("kind"))
    if not isinstance(raw, str) or not raw.strip():
        raise ProtocolError("Payload has no type")
    return raw.strip().upper()


def presence_event(users: Any) -> PresenceSnapshot:
    """Build a snapshot from a raw user list."""
    if not isinstance(users, list):
        raise ProtocolError("Presence payload is not a user list")
    try:
        return PresenceSnapshot(users=[User.model_validate(u) for u in users])
    except ValidationError as e:
        raise ProtocolError(f"Invalid user in presence snapshot: {e.error_count()} error(s)")


def normalize_payload(payload: Any, presence: bool = False, private: bool = False) -> NormalizedEvent:
    """Map a decoded payload to a ChatEvent.

    Args:
        payload: Decoded JSON body.
        presence: True when the payload came from the presence channel.
        private: True when the payload came from the private queue.

    Raises:
        ProtocolError: For unknown kinds and malformed payloads.
    """
    if presence:
        if isinstance(payload, dict):
            payload = payload.get("users")
        return presence_event(payload)

    if not isinstance(payload, dict):
        raise ProtocolError(f"Expected an object, got {type(payload).__name__}")

    kind = _event_kind(payload)
    if kind in PRESENCE_TYPES:
        return presence_event(payload.get("users"))

    try:
        message_type = MessageType(kind)
    except ValueError:
        raise ProtocolError(f"Unknown message type {kind!r}")

    data = dict(payload)
    data["type"] = message_type
    if private:
        data["isPrivate"] = True
    try:
        message = Message.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {kind} message: {e.error_count()} error(s)")
    return MessageEvent(message=message)


def normalize_frame(
    body: str,
    destination: str = "",
    presence: bool = False,
    private: bool = False,
) -> Optional[NormalizedEvent]:
    """Parse and normalize a frame body; None when the frame is dropped."""
    try:
        return normalize_payload(parse_body(body), presence=presence, private=private)
    except ProtocolError as e:
        logger.warning(f"[Normalizer] Dropping frame from {destination or '?'}: {e.message}")
        return None
