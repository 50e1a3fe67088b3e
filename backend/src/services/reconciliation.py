"""Message reconciliation engine.

Merges the three message sources a client sees (the initial/catch-up batch,
the live broadcast batch and the locally streamed AI output) into one
ordered, deduplicated, visibility-filtered sequence. The merge is recomputed
from scratch on every input change instead of patching a previous result.
"""

from collections.abc import Collection, Iterable
from datetime import UTC, datetime

from models.chat import ChatMessage
from services.message_rules import (
    identity_keys,
    is_deleted,
    is_optimistic,
    is_renderable,
    parse_timestamp,
)


def prefer(existing: ChatMessage, candidate: ChatMessage) -> ChatMessage:
    """Pick the copy to keep when two sources deliver the same message.

    A finalized copy always beats a streaming placeholder, and a server
    acknowledged copy beats an optimistic local one. Otherwise the later
    source wins.
    """
    if existing.is_streaming != candidate.is_streaming:
        return candidate if existing.is_streaming else existing
    if is_optimistic(existing) != is_optimistic(candidate):
        return candidate if is_optimistic(existing) else existing
    return candidate


def merge_messages(
    initial: Iterable[ChatMessage],
    realtime: Iterable[ChatMessage],
    streaming: Iterable[ChatMessage],
    viewer_id: str | None,
    deleted_ids: Collection[str] = (),
    now: datetime | None = None,
) -> list[ChatMessage]:
    """Build the canonical message list for one viewer.

    Copies are matched on the server id and on the client token, so two
    copies sharing either one collapse into a single entry.

    Args:
        initial: Historical or catch-up messages
        realtime: Messages received from the room broadcast plus local
            optimistic entries
        streaming: In-flight AI output for this viewer
        viewer_id: The user the view is rendered for
        deleted_ids: Message ids known to be deleted out of band
        now: Timestamp substituted for unparsable created_at values

    Returns:
        Messages sorted ascending by created_at, one per message
    """
    now = now or datetime.now(UTC)
    merged: dict[str, ChatMessage] = {}
    # id or client token -> key of the merged entry holding it
    aliases: dict[str, str] = {}
    tombstones: set[str] = set()

    for batch in (initial, realtime, streaming):
        for message in batch:
            if message is None:
                continue
            keys = identity_keys(message)
            if not keys:
                continue
            if is_deleted(message, deleted_ids):
                tombstones.update(keys)
                continue
            if not is_renderable(message, viewer_id, deleted_ids):
                continue

            slots = list(dict.fromkeys(aliases[k] for k in keys if k in aliases))
            if not slots:
                slot = keys[0]
                merged[slot] = message
            else:
                slot = slots[0]
                # The message links two entries seen separately so far
                for other in slots[1:]:
                    merged[slot] = prefer(merged[slot], merged.pop(other))
                    for alias, target in aliases.items():
                        if target == other:
                            aliases[alias] = slot
                merged[slot] = prefer(merged[slot], message)
            for key in keys:
                aliases[key] = slot

    dead = {aliases[key] for key in tombstones if key in aliases}
    visible = [m for slot, m in merged.items() if slot not in dead]
    # sorted() is stable, so equal timestamps keep source order
    return sorted(visible, key=lambda m: parse_timestamp(m.created_at, now))
