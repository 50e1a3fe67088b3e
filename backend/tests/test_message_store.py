"""Tests for the DynamoDB message store (moto)."""

import pytest

from models.chat import ChatUser
from services.errors import MessageNotFoundError
from services.message_store import MessageStore

ALICE = ChatUser(id="alice", name="Alice")
BOB = ChatUser(id="bob", name="Bob")


@pytest.fixture
def store(messages_table):
    return MessageStore(messages_table)


def _seed(store, count, room_id="room-1"):
    return [
        store.insert_message(room_id, ALICE, f"hello {i}", message_id=f"01M{i:03d}")
        for i in range(count)
    ]


class TestMessageStore:
    """Tests for MessageStore."""

    def test_insert_assigns_ulid_and_timestamp(self, store):
        message = store.insert_message("room-1", ALICE, "hi", client_msg_id="tok-1")
        assert len(message.id) == 26
        assert message.created_at
        assert message.client_msg_id == "tok-1"

        loaded = store.get_message("room-1", message.id)
        assert loaded == message

    def test_get_missing_message(self, store):
        assert store.get_message("room-1", "missing") is None
        assert store.get_message_timestamp("room-1", "missing") is None

    def test_fetch_messages_after_is_exclusive_inclusive(self, store):
        messages = _seed(store, 5)
        result = store.fetch_messages_after("room-1", messages[1].id, messages[3].id)
        assert [m.id for m in result] == [messages[2].id, messages[3].id]

    def test_fetch_messages_after_latest_is_empty(self, store):
        messages = _seed(store, 2)
        assert store.fetch_messages_after("room-1", messages[1].id, messages[1].id) == []

    def test_fetch_recent_window_returns_newest_ascending(self, store):
        messages = _seed(store, 6)
        result = store.fetch_recent_window("room-1", 3)
        assert [m.id for m in result] == [m.id for m in messages[3:]]

    def test_rooms_are_isolated(self, store):
        _seed(store, 2, room_id="room-1")
        _seed(store, 1, room_id="room-2")
        assert len(store.fetch_recent_window("room-2", 10)) == 1

    def test_mark_deleted_by_owner(self, store):
        message = store.insert_message("room-1", ALICE, "oops")
        deleted_at = store.mark_deleted("room-1", message.id, "alice")
        loaded = store.get_message("room-1", message.id)
        assert loaded.is_deleted
        assert loaded.deleted_at == deleted_at

    def test_mark_deleted_by_other_user_fails(self, store):
        message = store.insert_message("room-1", ALICE, "mine")
        with pytest.raises(MessageNotFoundError):
            store.mark_deleted("room-1", message.id, "bob")

    def test_mark_deleted_missing_message(self, store):
        with pytest.raises(MessageNotFoundError):
            store.mark_deleted("room-1", "01NOPE", "alice")

    def test_private_ai_message_round_trip(self, store):
        ai = ChatUser(id="ai-assistant", name="AI Assistant")
        message = store.insert_message(
            "room-1", ai, "secret", is_private=True, is_ai=True, requester_id="bob"
        )
        loaded = store.get_message("room-1", message.id)
        assert loaded.is_private and loaded.is_ai
        assert loaded.requester_id == "bob"

    def test_update_content(self, store):
        message = store.insert_message("room-1", BOB, "par", is_streaming=True)
        assert store.update_content("room-1", message.id, "partial", is_streaming=True)
        assert store.update_content("room-1", message.id, "final answer", is_streaming=False)
        loaded = store.get_message("room-1", message.id)
        assert loaded.content == "final answer"
        assert not loaded.is_streaming

    def test_update_content_never_overwrites_finished_reply(self, store):
        message = store.insert_message("room-1", BOB, "", is_streaming=True)
        store.update_content("room-1", message.id, "final answer", is_streaming=False)

        assert not store.update_content("room-1", message.id, "fin", is_streaming=True)
        loaded = store.get_message("room-1", message.id)
        assert loaded.content == "final answer"
        assert not loaded.is_streaming

    def test_update_content_missing_message(self, store):
        assert not store.update_content("room-1", "01NOPE", "text", is_streaming=True)
