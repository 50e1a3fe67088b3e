"""Answer generation strategies for the AI assistant.

Three backends are supported:

- ``anthropic_tavily``: Anthropic Messages API with a custom ``web_search``
  tool whose results come from Tavily.
- ``anthropic_native_web``: Anthropic Messages API with the server-side
  ``web_search`` tool.
- ``bedrock_converse``: AWS Bedrock converse API, searching through the same
  Tavily tool in converse format.

Search-backed answers are produced whole and replayed in chunks. Answers
without search stream directly from the provider.
"""

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Literal

import requests

from services.ai_config import (
    AIBackendMode,
    EffectiveAIFlags,
    SearchCooldown,
    SearchDriver,
    WebSearchConfig,
    search_cooldown,
)
from services.errors import SearchQuotaExceededError
from services.stream_sse import append_sources_if_missing
from services.web_search import TavilySearchClient, WebSearchResult, build_sources_markdown
from utils.constants import (
    AI_MAX_TOKENS,
    BEDROCK_MODEL_IDS,
    NATIVE_WEB_SEARCH_MAX_USES,
    WEB_SEARCH_TOOL_LOOP_LIMIT,
)

logger = logging.getLogger(__name__)

WEB_SEARCH_TOOL_NAME = "web_search"
WEB_SEARCH_TOOL_DESCRIPTION = (
    "Search the web for current information. Use it for recent events, "
    "prices, releases and anything that may have changed since training."
)
WEB_SEARCH_QUERY_DESCRIPTION = "A concise search query"
WEB_SEARCH_FAILED_MESSAGE = "Web search failed or timed out. Continue with best effort."
NO_ANSWER_MESSAGE = "I couldn't finish looking that up. Please try again."

ANTHROPIC_WEB_SEARCH_TOOL = {
    "name": WEB_SEARCH_TOOL_NAME,
    "description": WEB_SEARCH_TOOL_DESCRIPTION,
    "input_schema": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": WEB_SEARCH_QUERY_DESCRIPTION}
        },
        "required": ["query"],
    },
}

BEDROCK_WEB_SEARCH_TOOL = {
    "toolSpec": {
        "name": WEB_SEARCH_TOOL_NAME,
        "description": WEB_SEARCH_TOOL_DESCRIPTION,
        "inputSchema": {"json": ANTHROPIC_WEB_SEARCH_TOOL["input_schema"]},
    }
}


@dataclass
class GenerationResult:
    """Output of a backend: live text deltas, or a complete answer."""

    stream_mode: Literal["native_stream", "chunked"]
    deltas: Iterator[str] | None = None
    full_response: str = ""


def text_from_blocks(blocks: list[Any]) -> str:
    """Join the text blocks of an Anthropic response."""
    return "".join(
        block.text for block in blocks if getattr(block, "type", None) == "text"
    ).strip()


def native_sources_markdown(blocks: list[Any]) -> str:
    """Citation line from the server-side web search results of a response."""
    sources: list[tuple[str, str]] = []
    for block in blocks:
        if getattr(block, "type", None) != "web_search_tool_result":
            continue
        content = getattr(block, "content", None)
        if not isinstance(content, list):
            continue
        for item in content:
            if getattr(item, "type", None) != "web_search_result":
                continue
            title = (getattr(item, "title", "") or "").strip()
            if title:
                sources.append((title, getattr(item, "url", "") or ""))
    return build_sources_markdown(sources)


def to_bedrock_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {"role": m["role"], "content": [{"text": m["content"]}]}
        for m in messages
        if isinstance(m.get("content"), str) and m["content"]
    ]


class AIBackends:
    """Runs one generation against the configured backend."""

    def __init__(
        self,
        anthropic_client=None,
        bedrock_client=None,
        search_client: TavilySearchClient | None = None,
        cooldown: SearchCooldown = search_cooldown,
    ):
        """Initialize the backends.

        Args:
            anthropic_client: ``anthropic.Anthropic`` instance
            bedrock_client: boto3 ``bedrock-runtime`` client, needed only for
                the converse backend
            search_client: Tavily client, None disables the Tavily driver
            cooldown: Search cooldown shared across turns
        """
        self.anthropic = anthropic_client
        self.bedrock = bedrock_client
        self.search_client = search_client
        self.cooldown = cooldown

    @property
    def tavily_ready(self) -> bool:
        return (
            self.search_client is not None
            and self.search_client.is_configured
            and not self.cooldown.is_disabled()
        )

    def generate(
        self,
        flags: EffectiveAIFlags,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        search_requested: bool,
        search_config: WebSearchConfig,
    ) -> GenerationResult:
        """Produce an answer with the backend the flags select.

        Raises:
            Exception: Provider errors that no fallback could absorb
        """
        use_search = (
            search_config.enabled
            and search_requested
            and (
                flags.search_driver != SearchDriver.TAVILY
                or (self.search_client is not None and self.search_client.is_configured)
            )
        )

        if flags.backend_mode == AIBackendMode.BEDROCK_CONVERSE:
            return self._generate_with_bedrock(
                flags, model, system_prompt, messages, use_search, search_config
            )
        if flags.search_driver == SearchDriver.TAVILY:
            return self._generate_with_tavily(
                model, system_prompt, messages, use_search, search_config
            )
        return self._generate_with_native_search(model, system_prompt, messages, use_search)

    def stream_direct(
        self, model: str, system_prompt: str, messages: list[dict[str, Any]]
    ) -> GenerationResult:
        """Stream an answer without search."""
        return GenerationResult(
            stream_mode="native_stream",
            deltas=self._stream_text(model, system_prompt, messages),
        )

    # ---- Private methods ----

    def _stream_text(
        self, model: str, system_prompt: str, messages: list[dict[str, Any]]
    ) -> Iterator[str]:
        # Closing this generator exits the context manager and releases the
        # provider connection
        with self.anthropic.messages.stream(
            model=model,
            max_tokens=AI_MAX_TOKENS,
            system=system_prompt,
            messages=messages,
        ) as stream:
            yield from stream.text_stream

    def _generate_with_tavily(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        use_search: bool,
        search_config: WebSearchConfig,
    ) -> GenerationResult:
        if not use_search or not self.tavily_ready:
            return self.stream_direct(model, system_prompt, messages)
        try:
            answer = self._run_tavily_tool_loop(model, system_prompt, messages, search_config)
        except SearchQuotaExceededError:
            self.cooldown.disable(search_config.quota_cooldown_ms)
            return self.stream_direct(model, system_prompt, messages)
        return GenerationResult(stream_mode="chunked", full_response=answer)

    def _generate_with_native_search(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        use_search: bool,
    ) -> GenerationResult:
        if not use_search:
            return self.stream_direct(model, system_prompt, messages)
        answer = self._run_native_search(model, system_prompt, messages)
        return GenerationResult(stream_mode="chunked", full_response=answer)

    def _generate_with_bedrock(
        self,
        flags: EffectiveAIFlags,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        use_search: bool,
        search_config: WebSearchConfig,
    ) -> GenerationResult:
        try:
            answer = self._run_bedrock_converse(
                model,
                system_prompt,
                messages,
                use_search and self.tavily_ready,
                search_config,
            )
            return GenerationResult(stream_mode="chunked", full_response=answer)
        except Exception as e:
            if isinstance(e, SearchQuotaExceededError):
                self.cooldown.disable(search_config.quota_cooldown_ms)
            if not flags.fail_open:
                raise
            logger.warning("Bedrock generation failed, falling back to Anthropic: %s", e)

        if use_search:
            try:
                answer = self._run_native_search(model, system_prompt, messages)
                return GenerationResult(stream_mode="chunked", full_response=answer)
            except Exception as e:
                logger.warning("Native search fallback failed: %s", e)
        return self.stream_direct(model, system_prompt, messages)

    def _run_native_search(
        self, model: str, system_prompt: str, messages: list[dict[str, Any]]
    ) -> str:
        response = self.anthropic.messages.create(
            model=model,
            max_tokens=AI_MAX_TOKENS,
            system=system_prompt,
            messages=messages,
            tools=[
                {
                    "type": "web_search_20250305",
                    "name": WEB_SEARCH_TOOL_NAME,
                    "max_uses": NATIVE_WEB_SEARCH_MAX_USES,
                }
            ],
        )
        return append_sources_if_missing(
            text_from_blocks(response.content), native_sources_markdown(response.content)
        )

    def _search(
        self, tool_input: Any, search_config: WebSearchConfig
    ) -> tuple[str, list[WebSearchResult] | None]:
        """Run one web_search tool call.

        Returns:
            Tuple of (tool result text, results or None on failure)

        Raises:
            SearchQuotaExceededError: Propagated so the caller can cool down
        """
        query = tool_input.get("query") if isinstance(tool_input, dict) else None
        query = query.strip() if isinstance(query, str) else ""
        if not query:
            return "Missing query for web search", None
        try:
            results = self.search_client.search(
                query,
                max_results=search_config.max_results,
                timeout_ms=search_config.timeout_ms,
            )
        except SearchQuotaExceededError:
            raise
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error("Web search tool failed: %s", e)
            return WEB_SEARCH_FAILED_MESSAGE, None
        payload = {"query": query, "results": [r.to_dict() for r in results]}
        return json.dumps(payload), results

    def _run_tavily_tool_loop(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        search_config: WebSearchConfig,
    ) -> str:
        conversation = list(messages)
        latest_results: list[WebSearchResult] = []

        for _iteration in range(WEB_SEARCH_TOOL_LOOP_LIMIT):
            response = self.anthropic.messages.create(
                model=model,
                max_tokens=AI_MAX_TOKENS,
                system=system_prompt,
                messages=conversation,
                tools=[ANTHROPIC_WEB_SEARCH_TOOL],
                tool_choice={"type": "auto", "disable_parallel_tool_use": True},
            )
            conversation.append({"role": "assistant", "content": response.content})

            tool_uses = [
                block
                for block in response.content
                if getattr(block, "type", None) == "tool_use"
                and block.name == WEB_SEARCH_TOOL_NAME
            ]
            if not tool_uses:
                return append_sources_if_missing(
                    text_from_blocks(response.content), build_sources_markdown(latest_results)
                )

            tool_results = []
            for tool_use in tool_uses:
                logger.info("Executing tool: %s with input: %s", tool_use.name, tool_use.input)
                content, results = self._search(tool_use.input, search_config)
                if results is not None:
                    latest_results = results
                tool_results.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": tool_use.id,
                        "content": content,
                        "is_error": results is None,
                    }
                )
            conversation.append({"role": "user", "content": tool_results})

        # Tool budget exhausted: answer with what was found
        response = self.anthropic.messages.create(
            model=model,
            max_tokens=AI_MAX_TOKENS,
            system=system_prompt,
            messages=conversation,
        )
        return append_sources_if_missing(
            text_from_blocks(response.content), build_sources_markdown(latest_results)
        )

    def _run_bedrock_converse(
        self,
        model: str,
        system_prompt: str,
        messages: list[dict[str, Any]],
        use_search: bool,
        search_config: WebSearchConfig,
    ) -> str:
        """Call Bedrock converse, with a web_search tool loop when searching."""
        conversation = to_bedrock_messages(messages)
        model_id = BEDROCK_MODEL_IDS.get(model, model)
        latest_results: list[WebSearchResult] = []
        request: dict[str, Any] = {
            "modelId": model_id,
            "system": [{"text": system_prompt}],
            "inferenceConfig": {"maxTokens": AI_MAX_TOKENS},
        }
        if use_search:
            request["toolConfig"] = {"tools": [BEDROCK_WEB_SEARCH_TOOL]}

        for _iteration in range(WEB_SEARCH_TOOL_LOOP_LIMIT + 1):
            response = self.bedrock.converse(messages=conversation, **request)
            content_blocks = response.get("output", {}).get("message", {}).get("content", [])

            if response.get("stopReason") != "tool_use" or not use_search:
                text = "\n".join(b["text"] for b in content_blocks if "text" in b)
                return append_sources_if_missing(text, build_sources_markdown(latest_results))

            conversation.append({"role": "assistant", "content": content_blocks})
            tool_results = []
            for block in content_blocks:
                if "toolUse" not in block:
                    continue
                tool_use = block["toolUse"]
                content, results = self._search(tool_use.get("input", {}), search_config)
                if results is not None:
                    latest_results = results
                tool_result: dict[str, Any] = {
                    "toolUseId": tool_use["toolUseId"],
                    "content": [{"text": content}],
                }
                if results is None:
                    tool_result["status"] = "error"
                tool_results.append({"toolResult": tool_result})
            conversation.append({"role": "user", "content": tool_results})

        logger.warning("Bedrock tool loop exhausted without a final answer")
        return append_sources_if_missing(
            NO_ANSWER_MESSAGE, build_sources_markdown(latest_results)
        )
