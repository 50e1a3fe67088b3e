"""Data models for the room chat backend."""

from .chat import (
    AIStreamRequest,
    ChatMessage,
    ChatUser,
    MissedMessagesResponse,
    SendQueueEntry,
    SendState,
    StreamEvent,
)

__all__ = [
    "AIStreamRequest",
    "ChatMessage",
    "ChatUser",
    "MissedMessagesResponse",
    "SendQueueEntry",
    "SendState",
    "StreamEvent",
]
