"""Catch-up service: compute the messages a user missed while away."""

import logging

from models.chat import ChatMessage, MissedMessagesResponse
from services.delivery_tracker import DeliveryTracker
from services.message_rules import is_visible_to
from services.message_store import MessageStore
from utils.constants import DEFAULT_CONTEXT_WINDOW, DEFAULT_RECENT_WINDOW

logger = logging.getLogger(__name__)


class CatchupService:
    """Service answering room rejoin requests."""

    def __init__(
        self,
        message_store: MessageStore,
        tracker: DeliveryTracker,
        recent_window: int = DEFAULT_RECENT_WINDOW,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
    ):
        """Initialize the catch-up service.

        Args:
            message_store: Durable message store
            tracker: Delivery pointer tracker
            recent_window: Messages returned to a user with no delivery
                pointer (first join, or pointer expired)
            context_window: Messages returned as context when nothing was
                missed since the last visit
        """
        self.message_store = message_store
        self.tracker = tracker
        self.recent_window = recent_window
        self.context_window = context_window

    def get_missed_messages(self, user_id: str, room_id: str) -> MissedMessagesResponse:
        """Get the messages a user missed in a room and advance their pointer.

        Never raises: a store failure degrades to an empty ``caught_up``
        response so room entry is not blocked.
        """
        try:
            return self._get_missed_messages(user_id, room_id)
        except Exception as e:
            logger.error(
                "Error getting missed messages for user %s room %s: %s",
                user_id,
                room_id,
                e,
            )
            return MissedMessagesResponse(type="caught_up")

    def mark_received(self, user_id: str, room_id: str, message_id: str) -> bool:
        """Acknowledge that a user's client has observed a message."""
        return self.tracker.mark_received(user_id, room_id, message_id)

    # ---- Private methods ----

    def _get_missed_messages(self, user_id: str, room_id: str) -> MissedMessagesResponse:
        latest_id = self.tracker.get_room_latest(room_id)
        if not latest_id:
            return MissedMessagesResponse(type="caught_up")

        last_received_id = self.tracker.get_last_received(user_id, room_id)

        if not last_received_id:
            # Never tracked, or the pointer expired: bounded resync
            window = self.message_store.fetch_recent_window(room_id, self.recent_window)
            if window:
                self.tracker.mark_received(user_id, room_id, window[-1].id)
            messages = self._visible(window, user_id)
            return self._response("missed_messages", messages)

        if last_received_id == latest_id:
            return MissedMessagesResponse(type="caught_up")

        missed = self.message_store.fetch_messages_after(
            room_id, last_received_id, latest_id
        )
        self.tracker.mark_received(user_id, room_id, latest_id)
        messages = self._visible(missed, user_id)
        if messages:
            return self._response("missed_messages", messages)

        recent = self.message_store.fetch_recent_window(room_id, self.context_window)
        return self._response("recent_messages", self._visible(recent, user_id))

    @staticmethod
    def _visible(messages: list[ChatMessage], user_id: str) -> list[ChatMessage]:
        return [m for m in messages if not m.is_deleted and is_visible_to(m, user_id)]

    @staticmethod
    def _response(kind: str, messages: list[ChatMessage]) -> MissedMessagesResponse:
        if not messages:
            return MissedMessagesResponse(type="caught_up")
        return MissedMessagesResponse(type=kind, messages=messages, count=len(messages))
