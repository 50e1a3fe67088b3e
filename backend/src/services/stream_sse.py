"""Server-sent event encoding for AI answers.

Two encodings produce the same frames: passthrough forwards each provider
text delta as it arrives, and chunked replay slices an already complete
answer. Every frame carries the chunk and the cumulative text so far.
"""

import json
import logging
import re
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor

from models.chat import StreamEvent
from utils.constants import STREAM_CHUNK_SIZE

logger = logging.getLogger(__name__)

SOURCES_LINE_PATTERN = re.compile(r"^\s*sources\s*:", re.IGNORECASE | re.MULTILINE)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def encode_event(event: StreamEvent) -> str:
    """Serialize one event as an SSE ``data:`` frame."""
    return f"data: {json.dumps(event.model_dump(by_alias=True))}\n\n"


def append_sources_if_missing(content: str, sources_markdown: str) -> str:
    """Append the citation line unless the answer already cites sources."""
    if not sources_markdown or SOURCES_LINE_PATTERN.search(content):
        return content.strip()
    return f"{content.strip()}\n\n{sources_markdown}"


def passthrough_events(deltas: Iterable[str], message_id: str) -> Iterator[StreamEvent]:
    """One content event per non-empty provider delta."""
    full_content = ""
    for delta in deltas:
        if not delta:
            continue
        full_content += delta
        yield StreamEvent(
            type="content", message_id=message_id, content=delta, full_content=full_content
        )


def chunked_events(
    full_content: str, message_id: str, chunk_size: int = STREAM_CHUNK_SIZE
) -> Iterator[StreamEvent]:
    """Replay a complete answer as fixed-size content events."""
    if not full_content.strip():
        return
    assembled = ""
    for start in range(0, len(full_content), chunk_size):
        chunk = full_content[start : start + chunk_size]
        assembled += chunk
        yield StreamEvent(
            type="content", message_id=message_id, content=chunk, full_content=assembled
        )


class ChunkObserver:
    """Runs a per-chunk callback off the streaming path.

    Callbacks run in submission order on a single worker thread. A failing
    callback is logged and never reaches the stream.
    """

    def __init__(self, callback: Callable[[str], None] | None):
        self.callback = callback
        self._executor = ThreadPoolExecutor(max_workers=1) if callback else None

    def notify(self, full_content: str) -> None:
        if self._executor is None:
            return
        self._executor.submit(self._run, full_content)

    def close(self, wait: bool = False) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def _run(self, full_content: str) -> None:
        try:
            self.callback(full_content)
        except Exception as e:
            logger.warning("Stream chunk observer failed: %s", e)
