"""Services for the room chat backend."""

from .catchup_service import CatchupService
from .delivery_tracker import DeliveryTracker
from .message_store import MessageStore
from .reconciliation import merge_messages
from .send_queue import SendQueueController

__all__ = [
    "CatchupService",
    "DeliveryTracker",
    "MessageStore",
    "SendQueueController",
    "merge_messages",
]
