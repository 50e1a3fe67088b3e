"""AI response orchestration: one assistant turn from request to last chunk.

A turn moves through ``TurnStage`` in order:

    selecting_backend -> selecting_model -> searching -> generating
        -> streaming -> done

Any failure before ``streaming`` is retried once with the safe default (the
default model streamed directly, without search). A second failure, or any
failure once chunks have been emitted, ends the stream with one ``error``
event.
"""

import logging
import os
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from enum import Enum
from itertools import chain
from typing import Any

from models.chat import AIStreamRequest, StreamEvent
from services.ai_backends import AIBackends, GenerationResult
from services.ai_config import get_web_search_config, resolve_ai_flags
from services.errors import ConfigurationError
from services.model_selector import get_configured_model, resolve_model
from services.recency_detector import should_use_web_search
from services.stream_sse import ChunkObserver, chunked_events, passthrough_events
from utils.constants import AI_STREAM_DEFAULT_MODEL, STREAM_CHUNK_SIZE

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful AI assistant in a chat room. Give concise answers.

Answer in one or two sentences unless the user asks for more detail or for code.
Do not repeat the question. Be friendly and respectful to everyone in the room.
When you use web search results, cite them on a final line starting with "Sources:"."""

STREAM_ERROR_MESSAGE = "Failed to get AI response"


class TurnStage(str, Enum):
    SELECTING_BACKEND = "selecting_backend"
    SELECTING_MODEL = "selecting_model"
    SEARCHING = "searching"
    GENERATING = "generating"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


class AITurn:
    """Mutable state of a single assistant turn."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        self.stage = TurnStage.SELECTING_BACKEND
        self.retried = False
        self.model: str | None = None
        self.search_requested = False
        self.full_content = ""

    def advance(self, stage: TurnStage) -> None:
        logger.debug("AI turn %s: %s -> %s", self.message_id, self.stage.value, stage.value)
        self.stage = stage


def build_system_prompt(custom_prompt: str | None = None, now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    prompt = f"{SYSTEM_PROMPT}\n\nCurrent date and time (UTC): {now.isoformat()}"
    if custom_prompt and custom_prompt.strip():
        prompt = f"{prompt}\n\nAdditional instructions:\n{custom_prompt.strip()}"
    return prompt


def build_messages(request: AIStreamRequest) -> list[dict[str, Any]]:
    """Build an alternating user/assistant conversation ending with the user.

    Room participants' messages are prefixed with their names; consecutive
    messages with the same role are merged.
    """
    messages: list[dict[str, Any]] = []

    def add(role: str, content: str) -> None:
        if not content.strip():
            return
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] = f"{messages[-1]['content']}\n\n{content}"
        elif messages or role == "user":
            messages.append({"role": role, "content": content})

    for previous in request.previous_messages:
        if previous.is_ai:
            add("assistant", previous.content)
        else:
            name = previous.user_name or "User"
            add("user", f"{name}: {previous.content}")

    current = request.message.strip()
    if request.target_message_content and request.target_message_content.strip():
        current = (
            f"Regarding this message:\n\"\"\"\n{request.target_message_content.strip()}\n\"\"\"\n\n"
            f"{current}"
        )
    add("user", current)
    return messages


class AIOrchestrator:
    """Produces the SSE event sequence for assistant turns."""

    def __init__(
        self,
        backends: AIBackends,
        env: Mapping[str, str] | None = None,
        chunk_size: int = STREAM_CHUNK_SIZE,
    ):
        """Initialize the orchestrator.

        Args:
            backends: Generation strategies
            env: Environment mapping for flags, defaults to ``os.environ``
            chunk_size: Characters per replayed chunk
        """
        self.backends = backends
        self.env = os.environ if env is None else env
        self.chunk_size = chunk_size

    def stream_turn(
        self,
        request: AIStreamRequest,
        message_id: str,
        on_chunk: Callable[[str], None] | None = None,
        on_complete: Callable[[str], None] | None = None,
    ) -> Iterator[StreamEvent]:
        """Run one turn, yielding content events and at most one error event.

        Closing the returned generator stops the turn and releases the
        provider stream.

        Args:
            request: The AI request
            message_id: Id carried by every event of the turn
            on_chunk: Called with the cumulative text after each chunk, off the
                streaming path
            on_complete: Called with the final text once the turn is done
        """
        turn = AITurn(message_id)
        observer = ChunkObserver(on_chunk)
        result: GenerationResult | None = None

        try:
            try:
                result, first = self._prepare(request, turn)
            except ConfigurationError as e:
                logger.error("AI turn %s not configured: %s", message_id, e)
                turn.advance(TurnStage.FAILED)
                yield self._error_event(turn)
                return
            except Exception as e:
                logger.warning(
                    "AI turn %s failed while %s, retrying with safe default: %s",
                    message_id,
                    turn.stage.value,
                    e,
                )
                try:
                    result, first = self._prepare_safe_default(request, turn)
                except Exception as retry_error:
                    logger.error("AI turn %s safe default failed: %s", message_id, retry_error)
                    turn.advance(TurnStage.FAILED)
                    yield self._error_event(turn)
                    return

            turn.advance(TurnStage.STREAMING)
            if result.stream_mode == "native_stream":
                events = passthrough_events(chain(first, result.deltas), message_id)
            else:
                events = chunked_events(result.full_response, message_id, self.chunk_size)

            try:
                for event in events:
                    turn.full_content = event.full_content
                    observer.notify(turn.full_content)
                    yield event
            except Exception as e:
                logger.error("AI turn %s failed while streaming: %s", message_id, e)
                turn.advance(TurnStage.FAILED)
                yield self._error_event(turn)
                return

            turn.advance(TurnStage.DONE)
            logger.info(
                "AI turn %s done: model=%s search=%s retried=%s chars=%d",
                message_id,
                turn.model,
                turn.search_requested,
                turn.retried,
                len(turn.full_content),
            )
            if on_complete:
                try:
                    on_complete(turn.full_content)
                except Exception as e:
                    logger.error("AI turn %s completion callback failed: %s", message_id, e)
        finally:
            if result is not None and result.deltas is not None:
                result.deltas.close()
            observer.close()

    # ---- Private methods ----

    def _prepare(
        self, request: AIStreamRequest, turn: AITurn
    ) -> tuple[GenerationResult, list[str]]:
        """Run every stage up to the first available chunk."""
        turn.advance(TurnStage.SELECTING_BACKEND)
        flags = resolve_ai_flags(self.env)
        search_config = get_web_search_config(self.env)

        turn.advance(TurnStage.SELECTING_MODEL)
        turn.model = resolve_model(
            request.message,
            request.custom_prompt,
            request.target_message_content,
            env=self.env,
        )

        turn.advance(TurnStage.SEARCHING)
        turn.search_requested = should_use_web_search(
            request.message, request.custom_prompt, request.target_message_content
        )
        if turn.search_requested and self.backends.cooldown.is_disabled():
            logger.info("Web search cooling down, answering without search")

        turn.advance(TurnStage.GENERATING)
        result = self.backends.generate(
            flags,
            turn.model,
            build_system_prompt(request.custom_prompt),
            build_messages(request),
            turn.search_requested,
            search_config,
        )
        return result, self._prime(result)

    def _prepare_safe_default(
        self, request: AIStreamRequest, turn: AITurn
    ) -> tuple[GenerationResult, list[str]]:
        turn.retried = True
        turn.search_requested = False
        turn.model = get_configured_model(
            "AI_STREAM_DEFAULT_MODEL",
            self.env.get("AI_STREAM_DEFAULT_MODEL"),
            AI_STREAM_DEFAULT_MODEL,
        )
        turn.advance(TurnStage.GENERATING)
        result = self.backends.stream_direct(
            turn.model, build_system_prompt(request.custom_prompt), build_messages(request)
        )
        return result, self._prime(result)

    @staticmethod
    def _prime(result: GenerationResult) -> list[str]:
        """Pull the first delta so connection errors surface before streaming."""
        if result.deltas is None:
            return []
        try:
            return [next(result.deltas)]
        except StopIteration:
            return []
        except Exception:
            result.deltas.close()
            raise

    @staticmethod
    def _error_event(turn: AITurn) -> StreamEvent:
        return StreamEvent(
            type="error",
            message_id=turn.message_id,
            content=STREAM_ERROR_MESSAGE,
            full_content=turn.full_content,
        )
