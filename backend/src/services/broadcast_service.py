"""In-process per-room broadcast channel.

Delivery is at-least-once from the client's point of view: a subscriber may
see an event twice (for example once live and once via catch-up), and the
reconciliation engine dedupes by message identity.
"""

import asyncio
import logging
import time
from typing import Any

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 1024


class BroadcastChannel:
    """Fan-out of room events to live subscriber queues."""

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, room_id: str) -> asyncio.Queue:
        """Subscribe to a room. Events are delivered on the returned queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self._lock:
            self._subscribers.setdefault(room_id, set()).add(queue)
            count = len(self._subscribers[room_id])
        logger.info("broadcast: subscribe room=%s subs=%d", room_id, count)
        return queue

    async def unsubscribe(self, room_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(room_id)
            if subscribers and queue in subscribers:
                subscribers.remove(queue)
                if not subscribers:
                    self._subscribers.pop(room_id, None)
            count = len(self._subscribers.get(room_id, ()))
        logger.info("broadcast: unsubscribe room=%s subs=%d", room_id, count)

    async def publish(self, room_id: str, event: str, payload: Any) -> int:
        """Publish an event to every subscriber of a room.

        Returns:
            Number of subscriber queues the event was delivered to
        """
        envelope = {"type": event, "room_id": room_id, "ts": time.time(), "payload": payload}
        async with self._lock:
            targets = list(self._subscribers.get(room_id, ()))

        sent = 0
        for queue in targets:
            try:
                queue.put_nowait(envelope)
                sent += 1
            except asyncio.QueueFull:
                # A slow subscriber recovers through catch-up on rejoin
                logger.warning("broadcast: queue full room=%s event=%s (drop)", room_id, event)
        return sent

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscribers.get(room_id, ()))
