"""Local durable storage for the chat client."""
from .service import (
    MESSAGES_KEY,
    REFRESH_TOKEN_KEY,
    TOKEN_KEY,
    USER_KEY,
    LocalStore,
    MessageCache,
)

__all__ = [
    "MESSAGES_KEY",
    "REFRESH_TOKEN_KEY",
    "TOKEN_KEY",
    "USER_KEY",
    "LocalStore",
    "MessageCache",
]
