"""chatsync local bridge application.

Runs the chat client core inside a FastAPI process so a local UI can
read the reconciled chat state and issue commands over HTTP.

Modules:
    - connection: STOMP-over-WebSocket connection manager
    - chat: normalizer, state reconciler, topic router, command builder
    - auth: login/refresh/logout and the credential provider
    - storage: DuckDB-backed local store and bounded message cache
    - api: REST client for rooms and online users
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatsync.api.client import ChatApiClient
from chatsync.auth import Authenticator
from chatsync.auth.router import router as auth_router
from chatsync.chat.router import router as chat_router
from chatsync.config import get_config
from chatsync.errors import AuthError
from chatsync.session import ChatSession, get_session, set_session
from chatsync.storage import LocalStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every request; websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = LocalStore(db_path=config.cache.db_path)
    timeout = config.server.request_timeout_seconds
    authenticator = Authenticator(store, config.server.api_base_url, timeout=timeout)
    api = ChatApiClient(config.server.api_base_url, authenticator, timeout=timeout)

    if not authenticator.is_authenticated() and config.secrets.username and config.secrets.password:
        logger.info(f"No stored credential, logging in as {config.secrets.username}")
        try:
            await authenticator.login(config.secrets.username, config.secrets.password)
        except AuthError as e:
            logger.warning(f"Login failed: {e}")

    session = ChatSession(config, authenticator, store, api=api)
    set_session(session)
    if authenticator.is_authenticated():
        session.start()
    else:
        logger.info("No credential available; log in with POST /auth/login")

    yield  # Application runs here

    # Shutdown
    await session.stop()
    set_session(None)
    await api.aclose()
    await authenticator.aclose()
    store.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="chatsync",
    description="Local bridge for the chatsync real-time chat client",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(auth_router)
app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object including the connection state when a session exists.
    """
    session = get_session()
    return {
        "status": "ok",
        "connection": session.connection.state.value if session else None,
    }


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(app, host=config.bridge.host, port=config.bridge.port)
