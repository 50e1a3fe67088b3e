"""Chat data models for room messages, delivery tracking and AI streaming."""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ChatUser(BaseModel):
    """Sender identity, denormalized at the time of send."""

    id: str = Field(..., description="User identifier")
    name: str = Field("", description="Display name")
    avatar_url: str | None = Field(None, description="Avatar image URL")


class ChatMessage(BaseModel):
    """A single message in a room, from any source."""

    id: str = Field(..., description="Server ULID, or client token while optimistic")
    room_id: str = Field(..., description="Room the message belongs to")
    content: str = Field("", description="Message text content")
    created_at: str | None = Field(None, description="ISO timestamp when created")
    user: ChatUser = Field(..., description="Sender identity")
    client_msg_id: str | None = Field(
        None, description="Client idempotency token echoed back by the server"
    )
    requester_id: str | None = Field(
        None, description="User who triggered a private AI response"
    )
    is_ai: bool = False
    is_private: bool = False
    is_pending: bool = False
    is_queued: bool = False
    is_retrying: bool = False
    is_failed: bool = False
    is_deleted: bool = False
    is_streaming: bool = False
    deleted_at: str | None = None


class SendState(str, Enum):
    """Lifecycle state of a locally held outbound message."""

    QUEUED = "queued"
    PENDING = "pending"
    RETRYING = "retrying"
    FAILED = "failed"


class SendQueueEntry(BaseModel):
    """An outbound message that has not been durably acknowledged yet."""

    client_msg_id: str
    room_id: str
    user_id: str
    user_name: str = ""
    content: str
    is_private: bool = False
    attempts: int = 0
    last_error: str | None = None
    state: SendState = SendState.PENDING
    created_at: str

    def to_message(self) -> ChatMessage:
        """Render the entry as an optimistic chat message."""
        return ChatMessage(
            id=self.client_msg_id,
            client_msg_id=self.client_msg_id,
            room_id=self.room_id,
            content=self.content,
            created_at=self.created_at,
            user=ChatUser(id=self.user_id, name=self.user_name),
            requester_id=self.user_id if self.is_private else None,
            is_private=self.is_private,
            is_pending=self.state in (SendState.PENDING, SendState.RETRYING),
            is_queued=self.state == SendState.QUEUED,
            is_retrying=self.state == SendState.RETRYING,
            is_failed=self.state == SendState.FAILED,
        )


class MissedMessagesResponse(BaseModel):
    """Result of a catch-up request on room rejoin."""

    type: Literal["missed_messages", "caught_up", "recent_messages"]
    messages: list[ChatMessage] = Field(default_factory=list)
    count: int = 0


class SendMessageRequest(BaseModel):
    """Request body for sending a room message."""

    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    username: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=4000)
    is_private: bool = False
    client_msg_id: str | None = None


class UnsendMessageRequest(BaseModel):
    """Request body for unsending (soft deleting) a message."""

    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)


class MarkReceivedRequest(BaseModel):
    """Request body for acknowledging receipt of a message."""

    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    message_id: str = Field(..., min_length=1)


class RejoinRequest(BaseModel):
    """Request body for a room rejoin."""

    user_id: str = Field(..., min_length=1)


class PreviousMessage(BaseModel):
    """Conversation context passed along with an AI request."""

    content: str
    is_ai: bool = False
    user_name: str = ""


class AIStreamRequest(BaseModel):
    """Request body for an AI streaming turn."""

    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=4000)
    is_private: bool = False
    custom_prompt: str | None = None
    target_message_content: str | None = None
    previous_messages: list[PreviousMessage] = Field(default_factory=list)


class StreamEvent(BaseModel):
    """One server-sent event of an AI stream."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["content", "error"]
    message_id: str = Field(..., alias="messageId")
    content: str = ""
    full_content: str = Field("", alias="fullContent")
