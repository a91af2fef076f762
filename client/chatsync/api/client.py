"""REST client for the chat server's read endpoints.

Endpoints (all return the ``{success, data}`` envelope):
    GET /chat/rooms                          room list
    GET /chat/users/online                   online users (a full snapshot)
    GET /chat/messages/{roomId}?limit&offset room history page

Failures are logged and surface as empty results; callers decide
whether an empty answer matters. An expired token is refreshed once
through the credential provider.
"""
import logging
from typing import Any, List, Optional

import httpx
from pydantic import ValidationError

from chatsync.auth import CredentialProvider
from chatsync.chat.schemas import Message, Room, User
from chatsync.errors import AuthError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


class ChatApiClient:
    """Thin async wrapper over the chat REST API."""

    def __init__(
        self,
        api_base_url: str,
        credentials: CredentialProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_base_url = api_base_url.rstrip("/")
        self.credentials = credentials
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def get_rooms(self) -> List[Room]:
        data = await self._get("/chat/rooms")
        return self._parse_list(data, Room, "rooms")

    async def get_online_users(self) -> Optional[List[User]]:
        """Online users, or None when the request failed (not an empty snapshot)."""
        data = await self._get("/chat/users/online")
        if data is None:
            return None
        return self._parse_list(data, User, "online users")

    async def get_room_messages(
        self, room_id: str, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> List[Message]:
        data = await self._get(
            f"/chat/messages/{room_id}", params={"limit": limit, "offset": offset}
        )
        return self._parse_list(data, Message, "messages")

    async def aclose(self) -> None:
        await self._http.aclose()

    def _auth_headers(self) -> dict:
        credential = self.credentials.get_credential()
        if credential is None:
            return {}
        return {"Authorization": f"Bearer {credential.token}"}

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        """GET ``path`` and unwrap the envelope.

        A 401 triggers one credential refresh and one retry with the new
        token. If the refresh fails the provider has already dropped the
        stored session, so the request is not retried.
        """
        url = f"{self.api_base_url}{path}"
        try:
            resp = await self._http.get(url, params=params, headers=self._auth_headers())
            if resp.status_code == 401:
                logger.info(f"[API] GET {path} unauthorized, refreshing credential")
                try:
                    await self.credentials.refresh()
                except AuthError as e:
                    logger.error(f"[API] GET {path} failed: credential refresh failed: {e}")
                    return None
                resp = await self._http.get(url, params=params, headers=self._auth_headers())
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"[API] GET {path} failed: {e}")
            return None
        if not isinstance(body, dict) or not body.get("success"):
            logger.warning(f"[API] GET {path} returned an unsuccessful response")
            return None
        return body.get("data")

    @staticmethod
    def _parse_list(data: Any, model, label: str) -> list:
        if not isinstance(data, list):
            return []
        items = []
        for raw in data:
            try:
                items.append(model.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"[API] Skipping invalid entry in {label}: {e.error_count()} error(s)")
        return items
