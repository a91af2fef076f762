"""Tests for the state reconciler."""
import pytest

from chatsync.chat.reconciler import StateReconciler, is_duplicate
from chatsync.chat.schemas import Message, MessageEvent, PresenceSnapshot, Room, User
from chatsync.storage import MESSAGES_KEY, MessageCache


def msg(id, sender="ana", content="hi", timestamp=1_700_000_000_000, **extra):
    return Message(id=id, sender=sender, content=content, timestamp=timestamp, **extra)


@pytest.fixture
def cache(store):
    return MessageCache(store, max_messages=1000)


@pytest.fixture
def reconciler(cache):
    return StateReconciler(cache)


class TestDuplicateRule:
    """Tests for is_duplicate."""

    def test_same_id(self):
        assert is_duplicate(msg("1", content="a"), msg("1", content="b"))

    def test_same_sender_content_within_window(self):
        """900 ms apart: the echo collapses."""
        assert is_duplicate(msg("1"), msg("2", timestamp=1_700_000_000_900))

    def test_outside_window(self):
        """1500 ms apart: both are kept."""
        assert not is_duplicate(msg("1"), msg("2", timestamp=1_700_000_001_500))

    def test_window_is_strict(self):
        assert not is_duplicate(msg("1"), msg("2", timestamp=1_700_000_001_000))

    def test_different_sender(self):
        assert not is_duplicate(msg("1"), msg("2", sender="bo"))

    def test_iso_timestamps(self):
        a = msg("1", timestamp="2024-05-01T10:00:00.000Z")
        b = msg("2", timestamp="2024-05-01T10:00:00.400Z")
        assert is_duplicate(a, b)

    def test_unparseable_timestamp_never_matches_by_window(self):
        assert not is_duplicate(msg("1", timestamp="yesterday"), msg("2", timestamp="yesterday"))


class TestMessages:
    """Tests for message events."""

    def test_append(self, reconciler):
        assert reconciler.apply_event(MessageEvent(message=msg("1"))) is True
        assert [m.id for m in reconciler.messages] == ["1"]

    def test_duplicate_id_ignored(self, reconciler):
        reconciler.add_message(msg("1"))
        assert reconciler.add_message(msg("1", content="other")) is False
        assert len(reconciler.messages) == 1

    def test_echo_within_window_collapsed(self, reconciler):
        reconciler.add_message(msg("local_1"))
        reconciler.add_message(msg("srv-9", timestamp=1_700_000_000_900))
        assert [m.id for m in reconciler.messages] == ["local_1"]

    def test_repeat_outside_window_kept(self, reconciler):
        reconciler.add_message(msg("1"))
        reconciler.add_message(msg("2", timestamp=1_700_000_001_500))
        assert len(reconciler.messages) == 2

    def test_every_mutation_persisted(self, reconciler, store):
        reconciler.add_message(msg("1"))
        reconciler.add_message(msg("2", content="second"))
        cached = store.get_json(MESSAGES_KEY)
        assert [m["id"] for m in cached] == ["1", "2"]

    def test_cache_bounded_oldest_evicted(self, reconciler, store):
        """1005 distinct messages leave the newest 1000 in the cache."""
        for i in range(1005):
            reconciler.add_message(msg(str(i), content=f"m{i}", timestamp=i * 10_000))

        cached = store.get_json(MESSAGES_KEY)
        assert len(cached) == 1000
        assert cached[0]["id"] == "5"
        assert cached[-1]["id"] == "1004"
        assert len(reconciler.messages) == 1000

    def test_evicted_id_can_return(self, cache):
        reconciler = StateReconciler(cache=None, max_messages=2)
        reconciler.add_message(msg("a", content="1", timestamp=0))
        reconciler.add_message(msg("b", content="2", timestamp=10_000))
        reconciler.add_message(msg("c", content="3", timestamp=20_000))
        assert reconciler.add_message(msg("a", content="1", timestamp=0)) is True


class TestPresence:
    """Tests for presence snapshots and connectivity."""

    def test_snapshot_replaces_directory(self, reconciler):
        reconciler.apply_event(PresenceSnapshot(users=[User(id=1, username="ana"), User(id=2, username="bo")]))
        reconciler.apply_event(PresenceSnapshot(users=[User(id=2, username="bo")]))
        assert list(reconciler.active_users) == ["2"]

    def test_empty_snapshot_clears(self, reconciler):
        reconciler.replace_users([User(id=1)])
        reconciler.apply_event(PresenceSnapshot(users=[]))
        assert reconciler.active_users == {}

    def test_going_offline_clears_users(self, reconciler):
        reconciler.set_connected(True)
        reconciler.replace_users([User(id=1)])
        reconciler.set_connected(False)
        assert reconciler.active_users == {}
        assert reconciler.connected is False

    def test_messages_survive_disconnect(self, reconciler):
        reconciler.add_message(msg("1"))
        reconciler.set_connected(True)
        reconciler.set_connected(False)
        assert len(reconciler.messages) == 1


class TestSelection:
    """Tests for room/user mutual exclusion."""

    def test_default_selection(self, reconciler):
        assert reconciler.selected_room == "general"
        assert reconciler.selected_user is None

    def test_select_user_clears_room(self, reconciler):
        reconciler.select_user(User(id=2, username="bo"))
        assert reconciler.selected_room is None
        assert reconciler.selected_user.username == "bo"

    def test_select_room_clears_user(self, reconciler):
        reconciler.select_user(User(id=2))
        reconciler.select_room("random")
        assert reconciler.selected_room == "random"
        assert reconciler.selected_user is None

    def test_select_user_by_id_uses_directory(self, reconciler):
        reconciler.replace_users([User(id=2, username="bo")])
        reconciler.select_user("2")
        assert reconciler.selected_user.username == "bo"

    def test_never_both_selected(self, reconciler):
        for step in range(6):
            if step % 2:
                reconciler.select_room(f"room-{step}")
            else:
                reconciler.select_user(step)
            state = reconciler.snapshot()
            assert not (state.selectedRoom is not None and state.selectedUser is not None)


class TestClearAndLoad:
    """Tests for clear_all and cache restore."""

    def test_clear_requires_confirmation(self, reconciler, store):
        reconciler.add_message(msg("1"))
        assert reconciler.clear_all() is False
        assert len(reconciler.messages) == 1

        assert reconciler.clear_all(confirm=True) is True
        assert reconciler.messages == []
        assert store.get_json(MESSAGES_KEY) is None

    def test_load_restores_cache(self, cache):
        cache.save([msg("1").model_dump(mode="json"), msg("2", content="x").model_dump(mode="json")])
        reconciler = StateReconciler(cache)
        assert reconciler.load() == 2
        assert [m.id for m in reconciler.messages] == ["1", "2"]

    def test_load_skips_invalid_entries(self, cache, store):
        store.set_json(MESSAGES_KEY, [{"id": "1", "type": "BOGUS"}, msg("2").model_dump(mode="json")])
        reconciler = StateReconciler(cache)
        assert reconciler.load() == 1

    def test_load_malformed_cache(self, cache, store):
        store.set(MESSAGES_KEY, "{not json")
        reconciler = StateReconciler(cache)
        assert reconciler.load() == 0


class TestQueriesAndObservers:
    """Tests for derived views and change notifications."""

    def test_room_messages_exclude_private(self, reconciler):
        reconciler.add_message(msg("1", roomId="general"))
        reconciler.add_message(msg("2", content="p", roomId="general", receiverId=9))
        reconciler.add_message(msg("3", content="r", roomId="random"))
        assert [m.id for m in reconciler.room_messages("general")] == ["1"]

    def test_private_messages_both_directions(self, reconciler):
        reconciler.add_message(msg("1", content="a", senderId=7, receiverId=2))
        reconciler.add_message(msg("2", content="b", senderId=2, receiverId=7))
        reconciler.add_message(msg("3", content="c", senderId=2, receiverId=5))
        assert [m.id for m in reconciler.private_messages(7, 2)] == ["1", "2"]

    def test_changes_published(self, reconciler):
        states = []
        reconciler.changes.subscribe(states.append)
        reconciler.add_message(msg("1"))
        reconciler.select_room("random")
        assert len(states) == 2
        assert states[-1].selectedRoom == "random"
        assert len(states[-1].messages) == 1

    def test_set_rooms_falls_back_to_default(self, reconciler):
        reconciler.set_rooms([Room(id=3, name="dev")])
        assert [r.name for r in reconciler.snapshot().rooms] == ["dev"]
        reconciler.set_rooms([])
        assert [r.name for r in reconciler.snapshot().rooms] == ["general"]
