"""Topic router: channel subscriptions for one CONNECTED session.

On entering CONNECTED the router subscribes exactly four channels:

    public        /topic/public                  room Chat/Join/Leave/Typing
    activeUsers   /topic/activeUsers             full presence snapshots
    typing        /topic/typing                  typing pings
    private       /user/{userId}/queue/private   messages for this user only

They are dropped together on any exit from CONNECTED and re-created in
full on every reconnect. Inbound frames go through the normalizer into
the reconciler; bad frames are dropped with a warning and never raise.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

from chatsync.auth import CredentialProvider
from chatsync.connection import ConnectionManager, ConnectionState, Frame, StateChange
from chatsync.observers import Subscription

from .normalizer import normalize_frame
from .schemas import MessageEvent, PresenceSnapshot

logger = logging.getLogger(__name__)

PUBLIC_TOPIC = "/topic/public"
PRESENCE_TOPIC = "/topic/activeUsers"
TYPING_TOPIC = "/topic/typing"
PRIVATE_QUEUE = "/user/{user_id}/queue/private"

EventSink = Callable[[Union[MessageEvent, PresenceSnapshot]], object]


def private_destination(user_id) -> str:
    return PRIVATE_QUEUE.format(user_id=user_id)


@dataclass(frozen=True)
class Channel:
    """A logical channel and how its payloads are interpreted."""
    name: str
    destination: str
    presence: bool = False
    private: bool = False


class TopicRouter:
    """Subscribes the session channels and routes frames to ``sink``."""

    def __init__(
        self,
        connection: ConnectionManager,
        credentials: CredentialProvider,
        sink: EventSink,
    ) -> None:
        self.connection = connection
        self.credentials = credentials
        self.sink = sink
        # channel name -> subscription id
        self.active: Dict[str, str] = {}
        self._state_handle: Optional[Subscription] = None

    def attach(self) -> None:
        """Start following connection state changes."""
        if self._state_handle is None:
            self._state_handle = self.connection.state_changes.subscribe(self._on_state_change)

    def detach(self) -> None:
        if self._state_handle is not None:
            self._state_handle.cancel()
            self._state_handle = None
        self.unsubscribe_all()

    def channels(self) -> List[Channel]:
        channels = [
            Channel("public", PUBLIC_TOPIC),
            Channel("activeUsers", PRESENCE_TOPIC, presence=True),
            Channel("typing", TYPING_TOPIC),
        ]
        identity = self.credentials.get_identity()
        if identity is not None:
            channels.append(Channel(f"private:{identity.id}", private_destination(identity.id), private=True))
        else:
            logger.warning("[Router] No session identity; private queue not subscribed")
        return channels

    def subscribe_all(self) -> None:
        """(Re)subscribe every channel from scratch."""
        self.unsubscribe_all()
        for channel in self.channels():
            sub_id = self.connection.subscribe(channel.destination, self._handler(channel))
            if sub_id is not None:
                self.active[channel.name] = sub_id
        logger.info(f"[Router] Subscribed {len(self.active)} channels: {sorted(self.active)}")

    def unsubscribe_all(self) -> None:
        for sub_id in self.active.values():
            self.connection.unsubscribe(sub_id)
        self.active.clear()

    def route(self, channel: Channel, frame: Frame) -> None:
        """Normalize one frame and hand the event to the sink; never raises."""
        event = normalize_frame(
            frame.body,
            destination=frame.destination or channel.destination,
            presence=channel.presence,
            private=channel.private,
        )
        if event is None:
            return
        try:
            self.sink(event)
        except Exception as e:
            logger.error(f"[Router] Event sink failed for {channel.name}: {e}")

    def _handler(self, channel: Channel) -> Callable[[Frame], None]:
        return lambda frame: self.route(channel, frame)

    def _on_state_change(self, change: StateChange) -> None:
        if change.new == ConnectionState.CONNECTED:
            self.subscribe_all()
        elif change.old == ConnectionState.CONNECTED:
            # The manager has already dropped the server-side subscriptions
            self.active.clear()
