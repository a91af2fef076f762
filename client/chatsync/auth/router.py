"""Auth router for logging the bridge's chat session in and out.

Endpoints:
    POST /auth/login    - Log in with username/password and start the session
    POST /auth/logout   - Stop the session, notify the server, wipe local state
    GET  /auth/session  - Who the session is logged in as
"""
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from chatsync.errors import AuthError
from chatsync.session import ChatSession, get_session

from .schemas import LoginRequest
from .service import Authenticator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


class SessionInfo(BaseModel):
    """Authentication status of the bridge session."""
    authenticated: bool
    user: Optional[dict] = None
    state: str


def _session_and_authenticator() -> Tuple[ChatSession, Authenticator]:
    session = get_session()
    if session is None:
        raise HTTPException(status_code=503, detail="Chat session not started")
    if not isinstance(session.credentials, Authenticator):
        raise HTTPException(status_code=400, detail="Session credentials are fixed; login is not available")
    return session, session.credentials


def _info(session: ChatSession) -> SessionInfo:
    identity = session.credentials.get_identity()
    return SessionInfo(
        authenticated=session.credentials.get_credential() is not None,
        user=identity.model_dump() if identity else None,
        state=session.connection.state.value,
    )


@router.post("/login", response_model=SessionInfo)
async def login(request: LoginRequest) -> SessionInfo:
    """Log in and connect.

    A session that is already running is stopped first, so switching
    users never mixes subscriptions from two identities.

    Raises:
        HTTPException 401: If the server rejects the credentials.
    """
    session, authenticator = _session_and_authenticator()
    if session.started:
        await session.stop()
    try:
        await authenticator.login(request.username, request.password)
    except AuthError as e:
        logger.warning(f"[Bridge] Login failed for {request.username}: {e}")
        raise HTTPException(status_code=401, detail=e.message)
    session.start()
    return _info(session)


@router.post("/logout", response_model=SessionInfo)
async def logout() -> SessionInfo:
    """Disconnect, log out on the server and drop every cached message."""
    session, authenticator = _session_and_authenticator()
    await session.stop()
    await authenticator.logout()
    session.reconciler.clear_all(confirm=True)
    logger.info("[Bridge] Logged out")
    return _info(session)


@router.get("/session", response_model=SessionInfo)
async def session_info() -> SessionInfo:
    session = get_session()
    if session is None:
        raise HTTPException(status_code=503, detail="Chat session not started")
    return _info(session)
