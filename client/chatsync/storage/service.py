"""DuckDB-backed key/value storage for the local client cache.

This is the client's durable equivalent of browser local storage: each
value is a JSON-encoded document filed under a well-known key.

Database Schema:
    local_store table:
        - key: Storage key (primary key)
        - value: JSON-encoded document
        - updated_at: When the value was last written (UTC)

Well-known keys:
    - chat_messages: Bounded message cache (JSON array)
    - chat_user: Last-known session identity
    - chat_token / chat_refresh_token: Bearer and refresh tokens

Thread Safety:
    The DuckDB connection is NOT thread-safe. The store is meant to be
    used from the event loop thread that owns the chat session.

Usage:
    store = LocalStore(db_path=":memory:")
    store.set_json("chat_user", {"id": 7, "username": "ana"})
    identity = store.get_json("chat_user")
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

import duckdb

logger = logging.getLogger(__name__)

MESSAGES_KEY = "chat_messages"
USER_KEY = "chat_user"
TOKEN_KEY = "chat_token"
REFRESH_TOKEN_KEY = "chat_refresh_token"


class LocalStore:
    """Key/value store persisted in a DuckDB database file.

    Attributes:
        _db_path: Path to the DuckDB database file (":memory:" for tests).
    """

    _db_path: str = "chatsync_cache.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the store, creating the schema if needed.

        Args:
            db_path: Path to DuckDB file. Defaults to "chatsync_cache.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get the DuckDB connection, creating if needed."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Create the local_store table. Safe to call multiple times."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS local_store (
                key VARCHAR PRIMARY KEY,
                value VARCHAR NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

    def get(self, key: str) -> Optional[str]:
        """Return the raw stored string for *key*, or None."""
        row = self._get_connection().execute(
            "SELECT value FROM local_store WHERE key = ?", [key]
        ).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Store a raw string under *key*, replacing any previous value."""
        # Single statement: a failed write keeps the previous value
        self._get_connection().execute(
            "INSERT OR REPLACE INTO local_store (key, value, updated_at) VALUES (?, ?, ?)",
            [key, value, datetime.now(timezone.utc).replace(tzinfo=None)],
        )

    def remove(self, key: str) -> None:
        self._get_connection().execute("DELETE FROM local_store WHERE key = ?", [key])

    def clear(self) -> None:
        """Remove every key (used on logout)."""
        self._get_connection().execute("DELETE FROM local_store")

    def get_json(self, key: str) -> Any:
        """Decode the JSON document stored under *key*.

        Returns:
            The decoded value, or None when the key is missing or the
            stored text is not valid JSON.
        """
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("Failed to parse stored value for %s: %s", key, e)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set(key, json.dumps(value))

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None


class MessageCache:
    """Bounded message cache stored as one JSON array under ``chat_messages``.

    The cache keeps at most ``max_messages`` entries; when a write would
    exceed the cap the oldest entries are evicted first.
    """

    def __init__(self, store: LocalStore, max_messages: int = 1000, key: str = MESSAGES_KEY):
        self.store = store
        self.max_messages = max_messages
        self.key = key

    def load(self) -> List[dict]:
        saved = self.store.get_json(self.key)
        if saved is None:
            return []
        if not isinstance(saved, list):
            logger.error("Discarding message cache: expected a list, got %s", type(saved).__name__)
            return []
        return [m for m in saved if isinstance(m, dict)]

    def save(self, messages: List[dict]) -> List[dict]:
        """Persist *messages*, trimmed to the newest ``max_messages``.

        Returns:
            The list that was actually written.
        """
        if len(messages) > self.max_messages:
            messages = messages[-self.max_messages:]
        self.store.set_json(self.key, messages)
        return messages

    def clear(self) -> None:
        self.store.remove(self.key)
