"""Local UI bridge REST API.

Exposes the running ChatSession to a local UI process. All reads are
served from the reconciled state; all writes go through the command
builder or the reconciler's own operations.

Endpoints:
    GET    /chat/state                        - Full ChatState snapshot
    GET    /chat/rooms/{room_id}/messages     - Messages of one room
    GET    /chat/private/{user_id}/messages   - Private conversation with a user
    POST   /chat/messages                     - Send to the current selection
    POST   /chat/private                      - Send a private message
    POST   /chat/typing                       - Send a typing ping
    PUT    /chat/selection                    - Select a room or a user
    DELETE /chat/messages?confirm=true        - Clear messages and cache
    POST   /session/connect                   - connect()
    POST   /session/disconnect                - disconnect()
    GET    /debug/connection                  - Connection debug status
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from chatsync.session import ChatSession, get_session

from .schemas import ChatState, Message, UserId

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


class SendMessageRequest(BaseModel):
    """Request model for sending to the current selection."""
    content: str


class PrivateMessageRequest(BaseModel):
    """Request model for sending a private message."""
    content: str
    receiverId: UserId


class SelectionRequest(BaseModel):
    """Select a room (roomId) or a private conversation (userId)."""
    roomId: Optional[str] = None
    userId: Optional[UserId] = None


class CommandResponse(BaseModel):
    success: bool


class ClearResponse(BaseModel):
    cleared: bool


class ConnectResponse(BaseModel):
    success: bool
    state: str


class MessageListResponse(BaseModel):
    messages: List[Message] = Field(default_factory=list)


def _require_session() -> ChatSession:
    session = get_session()
    if session is None:
        raise HTTPException(status_code=503, detail="Chat session not started")
    return session


def _accepted(sent: bool, what: str) -> CommandResponse:
    if not sent:
        raise HTTPException(status_code=409, detail=f"{what} rejected")
    return CommandResponse(success=True)


@router.get("/chat/state", response_model=ChatState)
async def get_state() -> ChatState:
    """Get the current reconciled chat state."""
    return _require_session().reconciler.snapshot()


@router.get("/chat/rooms/{room_id}/messages", response_model=MessageListResponse)
async def get_room_messages(room_id: str) -> MessageListResponse:
    return MessageListResponse(messages=_require_session().reconciler.room_messages(room_id))


@router.get("/chat/private/{user_id}/messages", response_model=MessageListResponse)
async def get_private_messages(user_id: str) -> MessageListResponse:
    """Get the private conversation between the session user and ``user_id``.

    Raises:
        HTTPException 401: If the session has no authenticated identity.
    """
    session = _require_session()
    identity = session.credentials.get_identity()
    if identity is None:
        raise HTTPException(status_code=401, detail="Not logged in")
    return MessageListResponse(
        messages=session.reconciler.private_messages(identity.id, user_id)
    )


@router.post("/chat/messages", response_model=CommandResponse)
async def send_message(request: SendMessageRequest) -> CommandResponse:
    """Send ``content`` to the selected user, else the selected room.

    Raises:
        HTTPException 409: If the command was rejected (not connected,
            empty content or no identity).
    """
    return _accepted(_require_session().commands.send(request.content), "Message")


@router.post("/chat/private", response_model=CommandResponse)
async def send_private(request: PrivateMessageRequest) -> CommandResponse:
    session = _require_session()
    sent = session.commands.send_private_message(request.content, request.receiverId)
    return _accepted(sent, "Private message")


@router.post("/chat/typing", response_model=CommandResponse)
async def send_typing() -> CommandResponse:
    return _accepted(_require_session().commands.typing(), "Typing ping")


@router.put("/chat/selection", response_model=ChatState)
async def update_selection(request: SelectionRequest) -> ChatState:
    """Select exactly one of a room or a user.

    Raises:
        HTTPException 400: If neither or both of roomId/userId are given.
    """
    if (request.roomId is None) == (request.userId is None):
        raise HTTPException(status_code=400, detail="Provide exactly one of roomId or userId")
    reconciler = _require_session().reconciler
    if request.roomId is not None:
        reconciler.select_room(request.roomId)
    else:
        reconciler.select_user(request.userId)
    return reconciler.snapshot()


@router.delete("/chat/messages", response_model=ClearResponse)
async def clear_messages(confirm: bool = False) -> ClearResponse:
    """Clear all messages; requires ``?confirm=true``."""
    cleared = _require_session().reconciler.clear_all(confirm=confirm)
    if cleared:
        logger.info("[Bridge] Messages cleared by UI request")
    return ClearResponse(cleared=cleared)


@router.post("/session/connect", response_model=ConnectResponse)
async def connect() -> ConnectResponse:
    session = _require_session()
    started = session.start()
    return ConnectResponse(success=started, state=session.connection.state.value)


@router.post("/session/disconnect", response_model=ConnectResponse)
async def disconnect() -> ConnectResponse:
    session = _require_session()
    session.connection.disconnect()
    return ConnectResponse(success=True, state=session.connection.state.value)


@router.get("/debug/connection")
async def debug_connection() -> dict:
    """Connection debug status (state, attempts, subscriptions, observers)."""
    return _require_session().status()
