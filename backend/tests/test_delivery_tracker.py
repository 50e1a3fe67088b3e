"""Tests for key-value stores and the delivery tracker."""

from unittest.mock import MagicMock

import pytest

from services.delivery_tracker import (
    DeliveryTracker,
    room_latest_message_key,
    user_last_received_key,
)
from services.kv_store import DynamoKeyValueStore, MemoryKeyValueStore


class TestMemoryKeyValueStore:
    def test_set_and_get(self, clock):
        store = MemoryKeyValueStore(timer=clock)
        store.set("k", "v", 60)
        assert store.get("k") == "v"

    def test_entries_expire_after_ttl(self, clock):
        store = MemoryKeyValueStore(timer=clock)
        store.set("k", "v", 60)
        clock.advance(59)
        assert store.get("k") == "v"
        clock.advance(2)
        assert store.get("k") is None

    def test_missing_key(self):
        assert MemoryKeyValueStore().get("nope") is None


class TestDynamoKeyValueStore:
    def test_round_trip(self, delivery_table, clock):
        store = DynamoKeyValueStore(delivery_table, clock=clock)
        store.set("room:r1:latest_message_id", "01ABC", 3600)
        assert store.get("room:r1:latest_message_id") == "01ABC"

    def test_expired_item_reads_as_absent(self, delivery_table, clock):
        store = DynamoKeyValueStore(delivery_table, clock=clock)
        store.set("k", "v", 10)
        clock.advance(11)
        assert store.get("k") is None


class TestKeys:
    def test_key_formats(self):
        assert user_last_received_key("u1", "r1") == "user:u1:room:r1:last_received"
        assert room_latest_message_key("r1") == "room:r1:latest_message_id"


@pytest.fixture
def store():
    return MemoryKeyValueStore()


class TestDeliveryTracker:
    """Tests for DeliveryTracker."""

    def test_track_latest_overwrites(self, store):
        tracker = DeliveryTracker(store)
        assert tracker.track_latest("r1", "01A")
        assert tracker.track_latest("r1", "01B")
        assert tracker.get_room_latest("r1") == "01B"

    def test_track_latest_never_moves_backward(self, store):
        tracker = DeliveryTracker(store)
        tracker.track_latest("r1", "01C")
        assert tracker.track_latest("r1", "01A") is False
        assert tracker.track_latest("r1", "01C") is False
        assert tracker.get_room_latest("r1") == "01C"

    def test_mark_received_moves_forward(self, store):
        tracker = DeliveryTracker(store)
        assert tracker.mark_received("u1", "r1", "01A")
        assert tracker.mark_received("u1", "r1", "01C")
        assert tracker.get_last_received("u1", "r1") == "01C"

    def test_mark_received_never_moves_backward(self, store):
        tracker = DeliveryTracker(store)
        tracker.mark_received("u1", "r1", "01C")
        assert not tracker.mark_received("u1", "r1", "01A")
        assert tracker.get_last_received("u1", "r1") == "01C"

    def test_mark_received_same_id_is_noop(self, store):
        tracker = DeliveryTracker(store)
        tracker.mark_received("u1", "r1", "01A")
        assert not tracker.mark_received("u1", "r1", "01A")

    def test_recency_uses_timestamps_when_available(self, store):
        timestamps = {
            "zzz-old": "2026-01-20T12:00:00+00:00",
            "aaa-new": "2026-01-20T13:00:00+00:00",
        }
        tracker = DeliveryTracker(store, timestamp_lookup=lambda _r, m: timestamps.get(m))
        tracker.mark_received("u1", "r1", "zzz-old")
        # Lexically smaller but newer by timestamp
        assert tracker.mark_received("u1", "r1", "aaa-new")
        assert not tracker.mark_received("u1", "r1", "zzz-old")
        assert tracker.get_last_received("u1", "r1") == "aaa-new"

    def test_unknown_candidate_is_not_newer_than_known_pointer(self, store):
        timestamps = {"01B": "2026-01-20T12:00:00+00:00"}
        tracker = DeliveryTracker(store, timestamp_lookup=lambda _r, m: timestamps.get(m))
        tracker.mark_received("u1", "r1", "01B")
        assert not tracker.mark_received("u1", "r1", "01Z")

    def test_mark_caught_up(self, store):
        tracker = DeliveryTracker(store)
        assert not tracker.mark_caught_up("u1", "r1")
        tracker.track_latest("r1", "01Q")
        assert tracker.mark_caught_up("u1", "r1")
        assert tracker.get_last_received("u1", "r1") == "01Q"

    def test_store_failures_are_swallowed(self):
        broken = MagicMock()
        broken.get.side_effect = ConnectionError("kv down")
        broken.set.side_effect = ConnectionError("kv down")
        tracker = DeliveryTracker(broken)
        assert tracker.get_last_received("u1", "r1") is None
        assert tracker.get_room_latest("r1") is None
        assert tracker.track_latest("r1", "01A") is False
        assert tracker.mark_received("u1", "r1", "01A") is False

    def test_concurrent_readers_never_regress_pointer(self, store):
        """Interleaved stale and fresh receipts settle on the newest id."""
        tracker = DeliveryTracker(store)
        for message_id in ["01B", "01D", "01A", "01C", "01D", "01B"]:
            tracker.mark_received("u1", "r1", message_id)
        assert tracker.get_last_received("u1", "r1") == "01D"
