"""Per-user delivery pointers and per-room latest-message pointers.

Pointers only bound catch-up lookups. The durable message store stays the
source of truth, so every write here is best-effort: a failure is logged and
the caller carries on.
"""

import logging
from typing import Callable

from services.kv_store import KeyValueStore
from services.message_rules import parse_timestamp
from utils.constants import (
    POINTER_TTL_SECONDS,
    ROOM_LATEST_MESSAGE_KEY_PREFIX,
    USER_LAST_RECEIVED_KEY_PREFIX,
)

logger = logging.getLogger(__name__)

# (room_id, message_id) -> ISO created_at, or None if unknown
TimestampLookup = Callable[[str, str], str | None]


def user_last_received_key(user_id: str, room_id: str) -> str:
    """Key for a user's last received message in a room."""
    return f"{USER_LAST_RECEIVED_KEY_PREFIX}:{user_id}:room:{room_id}:last_received"


def room_latest_message_key(room_id: str) -> str:
    """Key for the latest accepted message in a room."""
    return f"{ROOM_LATEST_MESSAGE_KEY_PREFIX}:{room_id}:latest_message_id"


class DeliveryTracker:
    """Reads and writes delivery pointers against a key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        timestamp_lookup: TimestampLookup | None = None,
        ttl_seconds: int = POINTER_TTL_SECONDS,
    ):
        """Initialize the tracker.

        Args:
            store: Key-value store with per-key expiry
            timestamp_lookup: Resolves a message id to its created_at, used
                to order pointer updates. Without it, ids are compared
                directly (server ids are ULIDs, so they sort by time).
            ttl_seconds: Pointer time-to-live
        """
        self.store = store
        self.timestamp_lookup = timestamp_lookup
        self.ttl_seconds = ttl_seconds

    def get_last_received(self, user_id: str, room_id: str) -> str | None:
        """Get the user's last received message id for a room."""
        try:
            return self.store.get(user_last_received_key(user_id, room_id))
        except Exception as e:
            logger.error(
                "Error reading delivery pointer for user %s room %s: %s",
                user_id,
                room_id,
                e,
            )
            return None

    def get_room_latest(self, room_id: str) -> str | None:
        """Get the latest accepted message id for a room."""
        try:
            return self.store.get(room_latest_message_key(room_id))
        except Exception as e:
            logger.error("Error reading latest pointer for room %s: %s", room_id, e)
            return None

    def track_latest(self, room_id: str, message_id: str) -> bool:
        """Record a newly accepted message as the room's latest.

        The pointer is the upper bound of the catch-up range query, so it
        only moves forward in id order.

        Returns:
            True if the pointer was written, False for an older id or a failure
        """
        key = room_latest_message_key(room_id)
        try:
            current = self.store.get(key)
            if current and current >= message_id:
                logger.debug(
                    "Keeping latest %s for room %s over older %s", current, room_id, message_id
                )
                return False
            self.store.set(key, message_id, self.ttl_seconds)
            return True
        except Exception as e:
            logger.error(
                "Error tracking latest message %s for room %s: %s",
                message_id,
                room_id,
                e,
            )
            return False

    def mark_received(self, user_id: str, room_id: str, message_id: str) -> bool:
        """Advance a user's delivery pointer, never moving it backward.

        Returns:
            True if the pointer was written, False for a no-op or a failure
        """
        key = user_last_received_key(user_id, room_id)
        try:
            current = self.store.get(key)
            if current == message_id:
                return False
            if current and not self.is_newer(room_id, message_id, current):
                logger.debug(
                    "Ignoring stale receipt %s for user %s room %s (stored %s)",
                    message_id,
                    user_id,
                    room_id,
                    current,
                )
                return False
            self.store.set(key, message_id, self.ttl_seconds)
            return True
        except Exception as e:
            logger.error(
                "Error marking message %s received for user %s room %s: %s",
                message_id,
                user_id,
                room_id,
                e,
            )
            return False

    def mark_caught_up(self, user_id: str, room_id: str) -> bool:
        """Move the user's pointer up to the room's latest message."""
        latest = self.get_room_latest(room_id)
        if not latest:
            return False
        return self.mark_received(user_id, room_id, latest)

    def is_newer(self, room_id: str, candidate_id: str, current_id: str) -> bool:
        """True if candidate_id refers to a message strictly newer than current_id."""
        if self.timestamp_lookup is not None:
            candidate_ts = self.timestamp_lookup(room_id, candidate_id)
            current_ts = self.timestamp_lookup(room_id, current_id)
            if candidate_ts and current_ts:
                candidate_at = parse_timestamp(candidate_ts)
                current_at = parse_timestamp(current_ts)
                if candidate_at != current_at:
                    return candidate_at > current_at
            elif current_ts and not candidate_ts:
                # Unknown message can't be proven newer
                return False
            elif candidate_ts and not current_ts:
                # Stored pointer references a purged message
                return True
        return candidate_id > current_id
