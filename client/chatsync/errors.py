"""Error taxonomy for the chat client core.

None of these are raised across the public boundary of the connection
manager or the command builder. They are delivered to error observers
and written to the log; callers see a boolean result or a state
transition instead.
"""


class ChatSyncError(Exception):
    """Base exception for chat client errors."""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TransportError(ChatSyncError):
    """Raised when the handshake or the underlying socket fails."""


class ProtocolError(ChatSyncError):
    """Raised when an inbound frame cannot be parsed or routed."""
    def __init__(self, message: str, destination: str = ""):
        self.destination = destination
        super().__init__(f"{message} (destination={destination or '?'})")


class AuthError(ChatSyncError):
    """Raised when no usable credential is available."""


class PublishRejected(ChatSyncError):
    """Raised (internally) when a publish is attempted while not connected."""
    def __init__(self, destination: str, state: str):
        self.destination = destination
        self.state = state
        super().__init__(f"Cannot publish to {destination}: connection is {state}")
