"""Tests for the DuckDB local store and the bounded message cache."""
import os
import tempfile

import duckdb
import pytest

from chatsync.storage import MESSAGES_KEY, TOKEN_KEY, LocalStore, MessageCache


@pytest.fixture
def temp_db():
    """Create a temporary database path for testing."""
    # DuckDB creates the file itself
    db_path = tempfile.mktemp(suffix=".duckdb")

    yield db_path

    if os.path.exists(db_path):
        os.remove(db_path)
    wal_path = db_path + ".wal"
    if os.path.exists(wal_path):
        os.remove(wal_path)


class TestLocalStore:
    """Tests for LocalStore."""

    def test_get_missing_key(self, store):
        assert store.get("nope") is None
        assert store.get_json("nope") is None

    def test_set_replaces_value(self, store):
        store.set(TOKEN_KEY, "a")
        store.set(TOKEN_KEY, "b")
        assert store.get(TOKEN_KEY) == "b"
        count = store._get_connection().execute(
            "SELECT COUNT(*) FROM local_store WHERE key = ?", [TOKEN_KEY]
        ).fetchone()[0]
        assert count == 1

    def test_failed_write_keeps_previous_value(self, store):
        """A rejected value (NULL) must not drop what was stored before."""
        store.set(TOKEN_KEY, "a")
        with pytest.raises(duckdb.Error):
            store.set(TOKEN_KEY, None)
        assert store.get(TOKEN_KEY) == "a"

    def test_json_round_trip(self, store):
        store.set_json("chat_user", {"userId": 7, "username": "ana"})
        assert store.get_json("chat_user") == {"userId": 7, "username": "ana"}

    def test_invalid_json_returns_none(self, store):
        store.set("chat_user", "{oops")
        assert store.get_json("chat_user") is None

    def test_remove_and_clear(self, store):
        store.set("a", "1")
        store.set("b", "2")
        store.remove("a")
        assert store.get("a") is None
        store.clear()
        assert store.get("b") is None

    def test_persists_across_instances(self, temp_db):
        """Values survive a reopen of the same database file."""
        first = LocalStore(db_path=temp_db)
        first.set_json(MESSAGES_KEY, [{"id": "1"}])
        first.close()

        second = LocalStore(db_path=temp_db)
        assert second.get_json(MESSAGES_KEY) == [{"id": "1"}]
        second.close()


class TestMessageCache:
    """Tests for MessageCache."""

    def test_load_empty(self, store):
        assert MessageCache(store).load() == []

    def test_save_trims_to_newest(self, store):
        cache = MessageCache(store, max_messages=3)
        written = cache.save([{"id": str(i)} for i in range(5)])
        assert [m["id"] for m in written] == ["2", "3", "4"]
        assert [m["id"] for m in cache.load()] == ["2", "3", "4"]

    def test_non_list_discarded(self, store):
        store.set_json(MESSAGES_KEY, {"id": "1"})
        assert MessageCache(store).load() == []

    def test_non_object_entries_skipped(self, store):
        store.set_json(MESSAGES_KEY, [{"id": "1"}, "junk", 3])
        assert MessageCache(store).load() == [{"id": "1"}]

    def test_clear(self, store):
        cache = MessageCache(store)
        cache.save([{"id": "1"}])
        cache.clear()
        assert cache.load() == []
