"""Client-side outbound send queue.

Every message the user composes becomes a ``SendQueueEntry`` with a client
generated id and an explicit ``SendState``. The entry lives until the server
acknowledges it (directly, or through the broadcast echo carrying the same
client id) or the user discards it.

State transitions:

    send (online)   -> PENDING  -> removed | FAILED
    send (offline)  -> QUEUED   -> (reconnect) RETRYING -> removed | FAILED
    retry (online)  FAILED      -> RETRYING -> removed | FAILED
    retry (offline) FAILED      -> QUEUED
"""

import logging
import threading
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from models.chat import ChatMessage, SendQueueEntry, SendState

logger = logging.getLogger(__name__)

# Tries per delivery attempt, and the pause before each extra try (seconds)
DEFAULT_MAX_ATTEMPTS = 2
DEFAULT_RETRY_DELAYS = (1.0, 2.0, 4.0)

Sender = Callable[[SendQueueEntry], ChatMessage]


class SendQueueController:
    """Delivers one user's messages to one room, tolerating disconnects."""

    def __init__(
        self,
        room_id: str,
        user_id: str,
        user_name: str,
        sender: Sender,
        is_connected: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the controller.

        Args:
            room_id: Room the messages are sent to
            user_id: Sending user
            user_name: Sender display name for optimistic rendering
            sender: Remote send call; returns the authoritative message or
                raises on failure
            is_connected: Initial connectivity
            max_attempts: Tries per delivery attempt before the entry is
                marked failed
            retry_delays: Backoff before the 2nd, 3rd, ... try
            sleep: Sleep function, injectable for tests
        """
        self.room_id = room_id
        self.user_id = user_id
        self.user_name = user_name
        self.sender = sender
        self.max_attempts = max(1, max_attempts)
        self.retry_delays = tuple(retry_delays) or (0.0,)
        self.sleep = sleep

        self._connected = is_connected
        self._entries: dict[str, SendQueueEntry] = {}
        self._in_flight: set[str] = set()
        self._processing = False
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def send(self, content: str, is_private: bool = False) -> ChatMessage | None:
        """Send a new message.

        Returns:
            The authoritative message on success, the optimistic local copy
            when queued or failed, or None for blank content
        """
        content = (content or "").strip()
        if not content:
            return None

        entry = SendQueueEntry(
            client_msg_id=str(uuid.uuid4()),
            room_id=self.room_id,
            user_id=self.user_id,
            user_name=self.user_name,
            content=content,
            is_private=is_private,
            state=SendState.PENDING if self._connected else SendState.QUEUED,
            created_at=datetime.now(UTC).isoformat(),
        )
        with self._lock:
            self._entries[entry.client_msg_id] = entry

        if entry.state == SendState.QUEUED:
            logger.info("Offline, queued message %s", entry.client_msg_id)
            return entry.to_message()

        delivered = self._deliver(entry.client_msg_id, {SendState.PENDING}, SendState.PENDING)
        return delivered or entry.to_message()

    def retry(self, client_msg_id: str) -> bool:
        """Retry a failed message on explicit user request.

        A retry for an id that is already in flight is a no-op.

        Returns:
            True if the message was delivered by this call
        """
        if not self._connected:
            with self._lock:
                entry = self._entries.get(client_msg_id)
                if entry and entry.state == SendState.FAILED:
                    entry.state = SendState.QUEUED
            return False
        return (
            self._deliver(client_msg_id, {SendState.FAILED}, SendState.RETRYING)
            is not None
        )

    def set_connected(self, connected: bool) -> int:
        """Update connectivity. Restoring it flushes queued entries.

        Returns:
            Number of queued messages delivered by the flush
        """
        with self._lock:
            restored = connected and not self._connected
            self._connected = connected
        if restored:
            logger.info("Connectivity restored, flushing send queue")
            return self.flush_queued()
        return 0

    def flush_queued(self) -> int:
        """Deliver queued entries in the order they were composed."""
        with self._lock:
            if self._processing or not self._connected:
                return 0
            self._processing = True
            queued = [
                e.client_msg_id
                for e in self._entries.values()
                if e.state == SendState.QUEUED
            ]

        delivered = 0
        try:
            for client_msg_id in queued:
                if not self._connected:
                    break
                if self._deliver(client_msg_id, {SendState.QUEUED}, SendState.RETRYING):
                    delivered += 1
        finally:
            with self._lock:
                self._processing = False
        return delivered

    def reconcile_echo(self, message: ChatMessage) -> bool:
        """Drop the local entry a broadcast echo acknowledges.

        Returns:
            True if a local entry was replaced by the echo
        """
        if not message.client_msg_id:
            return False
        with self._lock:
            return self._entries.pop(message.client_msg_id, None) is not None

    def discard(self, client_msg_id: str) -> bool:
        """Remove an entry that is not currently being sent."""
        with self._lock:
            if client_msg_id in self._in_flight:
                return False
            return self._entries.pop(client_msg_id, None) is not None

    def clear_failed(self) -> int:
        """Explicit user action: drop every failed entry."""
        return self._clear(SendState.FAILED)

    def clear_queued(self) -> int:
        """Drop every entry still waiting for connectivity."""
        return self._clear(SendState.QUEUED)

    def get(self, client_msg_id: str) -> SendQueueEntry | None:
        with self._lock:
            entry = self._entries.get(client_msg_id)
            return entry.model_copy() if entry else None

    def optimistic_messages(self) -> list[ChatMessage]:
        """Local entries rendered as chat messages, in compose order."""
        with self._lock:
            return [entry.to_message() for entry in self._entries.values()]

    def status(self) -> dict[str, int | bool]:
        with self._lock:
            entries = list(self._entries.values())
            processing = self._processing
        failed = sum(1 for e in entries if e.state == SendState.FAILED)
        return {
            "total": len(entries),
            "pending": len(entries) - failed,
            "failed": failed,
            "processing": processing,
        }

    # ---- Private methods ----

    def _clear(self, state: SendState) -> int:
        with self._lock:
            doomed = [
                key
                for key, entry in self._entries.items()
                if entry.state == state and key not in self._in_flight
            ]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def _claim(
        self, client_msg_id: str, from_states: set[SendState], to_state: SendState
    ) -> SendQueueEntry | None:
        """Atomically mark an entry in flight if it is in an allowed state."""
        with self._lock:
            if client_msg_id in self._in_flight:
                logger.debug("Message %s already in flight, skipping", client_msg_id)
                return None
            entry = self._entries.get(client_msg_id)
            if entry is None or entry.state not in from_states:
                return None
            self._in_flight.add(client_msg_id)
            entry.state = to_state
            return entry

    def _deliver(
        self, client_msg_id: str, from_states: set[SendState], to_state: SendState
    ) -> ChatMessage | None:
        entry = self._claim(client_msg_id, from_states, to_state)
        if entry is None:
            return None

        try:
            last_error = None
            for attempt in range(self.max_attempts):
                if attempt > 0:
                    delay_index = min(attempt - 1, len(self.retry_delays) - 1)
                    self.sleep(self.retry_delays[delay_index])
                try:
                    message = self.sender(entry)
                except Exception as e:
                    last_error = str(e) or e.__class__.__name__
                    logger.warning(
                        "Send attempt %d/%d for message %s failed: %s",
                        attempt + 1,
                        self.max_attempts,
                        client_msg_id,
                        last_error,
                    )
                    with self._lock:
                        entry.attempts += 1
                    continue

                with self._lock:
                    self._entries.pop(client_msg_id, None)
                return message

            with self._lock:
                # The broadcast echo may have acknowledged it meanwhile
                if client_msg_id in self._entries:
                    entry.state = SendState.FAILED
                    entry.last_error = last_error
            return None
        finally:
            with self._lock:
                self._in_flight.discard(client_msg_id)
