"""Durable room message store backed by DynamoDB.

Table layout: hash key ``room_id``, range key ``message_id``. Message ids are
ULIDs, so range order is creation order and "messages after X" is a key
range query.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError
from ulid import ULID

from models.chat import ChatMessage, ChatUser
from services.errors import MessageNotFoundError
from utils.dynamodb_utils import parse_from_dynamodb, prepare_for_dynamodb, query_all

logger = logging.getLogger(__name__)


class MessageStore:
    """Service for persisting and querying room messages."""

    def __init__(self, table):
        """Initialize the store.

        Args:
            table: DynamoDB table for room messages
        """
        self.table = table

    def insert_message(
        self,
        room_id: str,
        user: ChatUser,
        content: str,
        is_private: bool = False,
        is_ai: bool = False,
        requester_id: str | None = None,
        client_msg_id: str | None = None,
        message_id: str | None = None,
        is_streaming: bool = False,
    ) -> ChatMessage:
        """Persist a new message and return its authoritative form."""
        message = ChatMessage(
            id=message_id or str(ULID()),
            room_id=room_id,
            content=content,
            created_at=datetime.now(UTC).isoformat(),
            user=user,
            client_msg_id=client_msg_id,
            requester_id=requester_id,
            is_ai=is_ai,
            is_private=is_private,
            is_streaming=is_streaming,
        )
        self.table.put_item(Item=self._message_to_item(message))
        return message

    def get_message(self, room_id: str, message_id: str) -> ChatMessage | None:
        """Get a single message, or None if it does not exist."""
        response = self.table.get_item(
            Key={"room_id": room_id, "message_id": message_id}
        )
        item = response.get("Item")
        return self._item_to_message(item) if item else None

    def get_message_timestamp(self, room_id: str, message_id: str) -> str | None:
        """Get a message's created_at, or None if unknown."""
        try:
            message = self.get_message(room_id, message_id)
        except Exception as e:
            logger.error("Error loading timestamp for message %s: %s", message_id, e)
            return None
        return message.created_at if message else None

    def fetch_messages_after(
        self, room_id: str, after_message_id: str, up_to_message_id: str
    ) -> list[ChatMessage]:
        """Messages strictly after one id, up to and including another.

        Returns:
            Messages in ascending creation order
        """
        if after_message_id >= up_to_message_id:
            return []

        items = query_all(
            self.table,
            KeyConditionExpression=Key("room_id").eq(room_id)
            & Key("message_id").between(after_message_id, up_to_message_id),
            ScanIndexForward=True,
        )
        return [
            self._item_to_message(item)
            for item in items
            if item.get("message_id") != after_message_id
        ]

    def fetch_recent_window(self, room_id: str, limit: int) -> list[ChatMessage]:
        """The most recent messages of a room in ascending creation order."""
        if limit <= 0:
            return []
        response = self.table.query(
            KeyConditionExpression=Key("room_id").eq(room_id),
            ScanIndexForward=False,  # Most recent first
            Limit=limit,
        )
        items = response.get("Items", [])
        items.reverse()
        return [self._item_to_message(item) for item in items]

    def mark_deleted(self, room_id: str, message_id: str, user_id: str) -> str:
        """Soft delete a message owned by user_id.

        Returns:
            The deleted_at timestamp

        Raises:
            MessageNotFoundError: If the message does not exist or belongs to
                another user
        """
        deleted_at = datetime.now(UTC).isoformat()
        try:
            self.table.update_item(
                Key={"room_id": room_id, "message_id": message_id},
                UpdateExpression="SET is_deleted = :true, deleted_at = :deleted_at",
                ConditionExpression="attribute_exists(message_id) AND user_id = :user_id",
                ExpressionAttributeValues={
                    ":true": True,
                    ":deleted_at": deleted_at,
                    ":user_id": user_id,
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise MessageNotFoundError(
                    "Message not found or you do not have permission to unsend it"
                )
            raise
        return deleted_at

    def update_content(
        self, room_id: str, message_id: str, content: str, is_streaming: bool
    ) -> bool:
        """Overwrite the content of a message that is still being generated.

        Only messages still flagged as streaming are updated, so a late
        partial write can never replace a finished reply.

        Returns:
            True if the message was updated
        """
        try:
            self.table.update_item(
                Key={"room_id": room_id, "message_id": message_id},
                UpdateExpression="SET content = :content, is_streaming = :streaming",
                ConditionExpression="is_streaming = :true",
                ExpressionAttributeValues={
                    ":content": content,
                    ":streaming": is_streaming,
                    ":true": True,
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise
        return True

    # ---- Private methods ----

    @staticmethod
    def _message_to_item(message: ChatMessage) -> dict[str, Any]:
        return prepare_for_dynamodb(
            {
                "room_id": message.room_id,
                "message_id": message.id,
                "user_id": message.user.id,
                "user_name": message.user.name,
                "avatar_url": message.user.avatar_url,
                "content": message.content,
                "created_at": message.created_at,
                "client_msg_id": message.client_msg_id,
                "requester_id": message.requester_id,
                "deleted_at": message.deleted_at,
                "is_ai": message.is_ai,
                "is_private": message.is_private,
                "is_deleted": message.is_deleted,
                "is_streaming": message.is_streaming,
            }
        )

    @staticmethod
    def _item_to_message(item: dict[str, Any]) -> ChatMessage:
        item = parse_from_dynamodb(item)
        return ChatMessage(
            id=item.get("message_id", ""),
            room_id=item.get("room_id", ""),
            content=item.get("content", ""),
            created_at=item.get("created_at"),
            user=ChatUser(
                id=item.get("user_id", ""),
                name=item.get("user_name", ""),
                avatar_url=item.get("avatar_url"),
            ),
            client_msg_id=item.get("client_msg_id"),
            requester_id=item.get("requester_id"),
            is_ai=bool(item.get("is_ai", False)),
            is_private=bool(item.get("is_private", False)),
            is_deleted=bool(item.get("is_deleted", False)),
            is_streaming=bool(item.get("is_streaming", False)),
            deleted_at=item.get("deleted_at"),
        )
