"""Message identity and visibility rules.

Pure functions shared by the reconciliation engine, the catch-up service and
the send queue. Nothing here touches storage or the network.
"""

from collections.abc import Collection
from datetime import UTC, datetime

from models.chat import ChatMessage


def identity_keys(message: ChatMessage) -> tuple[str, ...]:
    """Every identifier a copy of this message can be matched by.

    Copies sharing either the id or the client token are the same message:
    an optimistic local entry and its server echo share the token, and two
    server copies share the id even when only one carries the token.
    """
    keys = [message.id] if message.id else []
    if message.client_msg_id and message.client_msg_id != message.id:
        keys.append(message.client_msg_id)
    return tuple(keys)


def is_visible_to(message: ChatMessage, viewer_id: str | None) -> bool:
    """Private messages are only visible to the requester and the sender."""
    if not message.is_private:
        return True
    if not viewer_id:
        return False
    return viewer_id in (message.requester_id, message.user.id)


def is_deleted(message: ChatMessage, deleted_ids: Collection[str] = ()) -> bool:
    """Deleted in the message itself, or learned out of band."""
    if message.is_deleted:
        return True
    if message.id in deleted_ids:
        return True
    return bool(message.client_msg_id and message.client_msg_id in deleted_ids)


def is_renderable(
    message: ChatMessage,
    viewer_id: str | None,
    deleted_ids: Collection[str] = (),
) -> bool:
    """Inclusion test applied to every merge candidate."""
    if not message.id:
        return False
    if is_deleted(message, deleted_ids):
        return False
    if not (message.user.name or "").strip():
        return False
    # An in-flight stream may legitimately be empty or partial
    if not message.is_streaming and not (message.content or "").strip():
        return False
    return is_visible_to(message, viewer_id)


def is_optimistic(message: ChatMessage) -> bool:
    """True for local copies that the server has not acknowledged."""
    return (
        message.is_pending
        or message.is_queued
        or message.is_retrying
        or message.is_failed
    )


def parse_timestamp(value: str | None, now: datetime | None = None) -> datetime:
    """Parse an ISO timestamp, treating missing or garbage values as now."""
    fallback = now or datetime.now(UTC)
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed
