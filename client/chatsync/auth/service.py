"""Credential providers and the HTTP authenticator.

The connection core never logs in by itself. It asks a
``CredentialProvider`` for the current bearer credential each time it
enters Connecting, and for the session identity when it needs the
user's id (private queue, outbound sender fields).

``Authenticator`` is the HTTP implementation:
1. POST /auth/login with username + password
2. Store token, refresh token and identity in the local store
3. POST /auth/refresh to rotate the token pair before a reconnect
4. POST /auth/logout and wipe the local store
"""
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import ValidationError

from chatsync.errors import AuthError
from chatsync.storage import REFRESH_TOKEN_KEY, TOKEN_KEY, USER_KEY, LocalStore

from .schemas import Credential, LoginRequest, SessionIdentity

logger = logging.getLogger(__name__)


class CredentialProvider(ABC):
    """Source of the bearer credential and the authenticated identity."""

    @abstractmethod
    def get_credential(self) -> Optional[Credential]:
        """Return the current credential, or None when not logged in."""

    @abstractmethod
    def get_identity(self) -> Optional[SessionIdentity]:
        """Return the authenticated user, or None when not logged in."""

    async def refresh(self) -> Credential:
        """Obtain a fresh credential after the current one was rejected.

        Raises:
            AuthError: If this provider cannot refresh.
        """
        raise AuthError(f"{type(self).__name__} cannot refresh credentials")


class StaticCredentialProvider(CredentialProvider):
    """Provider over a fixed credential (embedding and tests)."""

    def __init__(self, credential: Optional[Credential], identity: Optional[SessionIdentity]):
        self.credential = credential
        self.identity = identity

    def get_credential(self) -> Optional[Credential]:
        return self.credential

    def get_identity(self) -> Optional[SessionIdentity]:
        return self.identity


class Authenticator(CredentialProvider):
    """Login/refresh/logout against the chat server's REST API.

    Tokens and identity are kept in the ``LocalStore`` under the
    well-known keys so a restarted client resumes the last session.
    """

    def __init__(
        self,
        store: LocalStore,
        api_base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.store = store
        self.api_base_url = api_base_url.rstrip("/")
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    # -- CredentialProvider ---------------------------------------------------

    def get_credential(self) -> Optional[Credential]:
        token = self.store.get(TOKEN_KEY)
        if not token:
            return None
        return Credential(token=token, refresh_token=self.store.get(REFRESH_TOKEN_KEY))

    def get_identity(self) -> Optional[SessionIdentity]:
        data = self.store.get_json(USER_KEY)
        if not data:
            return None
        try:
            return SessionIdentity.model_validate(data)
        except ValidationError as e:
            logger.error(f"Stored session identity is invalid: {e}")
            return None

    def is_authenticated(self) -> bool:
        return self.get_credential() is not None

    # -- HTTP exchanges -------------------------------------------------------

    async def login(self, username: str, password: str) -> SessionIdentity:
        """Exchange username/password for a token pair.

        Returns:
            The authenticated SessionIdentity.

        Raises:
            AuthError: If the server rejects the login or is unreachable.
        """
        request = LoginRequest(username=username, password=password)
        data = await self._post("/auth/login", request.model_dump())
        try:
            credential = Credential.model_validate(data)
            identity = SessionIdentity.model_validate(data)
        except ValidationError as e:
            raise AuthError(f"Login response is missing fields: {e}") from e

        self._store_credential(credential)
        self.store.set_json(USER_KEY, identity.model_dump(by_alias=True))
        logger.info(f"Logged in as {identity.username} (id={identity.id})")
        return identity

    async def refresh(self) -> Credential:
        """Rotate the token pair using the stored refresh token.

        Raises:
            AuthError: If no refresh token is stored or the refresh fails.
                On failure the stored credential is cleared.
        """
        current = self.get_credential()
        if current is None or not current.refresh_token:
            raise AuthError("No refresh token available")
        try:
            data = await self._post("/auth/refresh", {"refreshToken": current.refresh_token})
            credential = Credential.model_validate(data)
        except (AuthError, ValidationError) as e:
            logger.error(f"Token refresh failed: {e}")
            self.store.clear()
            raise AuthError(f"Token refresh failed: {e}") from e
        self._store_credential(credential)
        logger.info(f"Token refreshed ({credential.token[:8]}...)")
        return credential

    async def logout(self) -> None:
        """Tell the server and wipe local credentials; never raises."""
        credential = self.get_credential()
        try:
            if credential is not None:
                await self._http.post(
                    f"{self.api_base_url}/auth/logout",
                    headers={"Authorization": f"Bearer {credential.token}"},
                )
        except httpx.HTTPError as e:
            logger.error(f"Logout error: {e}")
        finally:
            self.store.clear()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- Helpers --------------------------------------------------------------

    def _store_credential(self, credential: Credential) -> None:
        self.store.set(TOKEN_KEY, credential.token)
        if credential.refresh_token:
            self.store.set(REFRESH_TOKEN_KEY, credential.refresh_token)

    async def _post(self, path: str, payload: dict) -> dict:
        try:
            resp = await self._http.post(
                f"{self.api_base_url}{path}",
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AuthError(f"Network error during {path}: {e}") from e

        if resp.status_code >= 400:
            raise AuthError(f"{path} rejected with HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise AuthError(f"{path} returned a non-JSON response: {e}") from e
        if not isinstance(body, dict):
            raise AuthError(f"{path} returned an unexpected response")
        if not body.get("success"):
            raise AuthError(body.get("message") or f"{path} was not successful")
        return body.get("data") or {}
