"""Route AI requests to the default or the code-tuned model."""

import logging
import os
import re
from collections.abc import Mapping

from utils.constants import (
    AI_STREAM_CODE_MODEL,
    AI_STREAM_DEFAULT_MODEL,
    ALLOWED_AI_MODELS,
)

logger = logging.getLogger(__name__)

LANGUAGE_HINTS = [
    "javascript",
    "typescript",
    "python",
    "java",
    "c#",
    "c++",
    "go",
    "golang",
    "rust",
    "php",
    "ruby",
    "sql",
    "html",
    "css",
    "bash",
    "shell",
    "node",
    "react",
    "nextjs",
    "next.js",
]

ACTION_HINTS = [
    "write code",
    "write a function",
    "write a script",
    "write a program",
    "create function",
    "generate code",
    "generate script",
    "implement",
    "refactor",
    "debug",
    "fix bug",
    "fix this error",
    "add unit test",
    "show code",
    "provide code",
]

CONCEPT_ONLY_HINTS = [
    "explain",
    "what is",
    "overview",
    "summary",
    "summarize",
    "high level",
    "without code",
    "no code",
]

CODE_PATTERN_REGEXES = [
    re.compile(r"```.*```", re.DOTALL),
    re.compile(r"\bfunction\s+[a-zA-Z_$]"),
    re.compile(r"\bclass\s+[A-Z][a-zA-Z0-9_]*"),
    re.compile(r"\b(import|export)\s+"),
    re.compile(r"\b(const|let|var)\s+[a-zA-Z_$]"),
    re.compile(r"\bTraceback \(most recent call last\)"),
    re.compile(r"\bTypeError:|\bReferenceError:|\bSyntaxError:", re.IGNORECASE),
]


def _includes_any(text: str, hints: list[str]) -> bool:
    return any(hint in text for hint in hints)


def _has_code_pattern(text: str) -> bool:
    return any(regex.search(text) for regex in CODE_PATTERN_REGEXES)


def should_use_code_model(
    message: str,
    custom_prompt: str | None = None,
    target_message_content: str | None = None,
) -> bool:
    """Decide whether a request needs the code-tuned model.

    The instruction is the message plus any custom prompt. The target message
    (for replies and edits) only counts as context.
    """
    instruction = "\n".join(p for p in (message, custom_prompt) if p).strip()
    context = (target_message_content or "").strip()
    if not instruction and not context:
        return False

    if _has_code_pattern(instruction):
        return True

    normalized = instruction.lower()
    has_action = _includes_any(normalized, ACTION_HINTS)
    if not has_action and _includes_any(normalized, CONCEPT_ONLY_HINTS):
        logger.debug("Concept-only request, using default model")
        return False

    return has_action and (
        _includes_any(normalized, LANGUAGE_HINTS)
        or "code" in normalized
        or _has_code_pattern(context)
    )


def get_configured_model(env_key: str, value: str | None, fallback: str) -> str:
    """Validate a configured model name against the allow-list."""
    trimmed = (value or "").strip()
    if not trimmed:
        return fallback
    if trimmed not in ALLOWED_AI_MODELS:
        logger.warning('Invalid %s value "%s", falling back to %s', env_key, trimmed, fallback)
        return fallback
    return trimmed


def resolve_model(
    message: str,
    custom_prompt: str | None = None,
    target_message_content: str | None = None,
    env: Mapping[str, str] | None = None,
) -> str:
    """Pick the model name for an AI turn."""
    env = os.environ if env is None else env
    if should_use_code_model(message, custom_prompt, target_message_content):
        return get_configured_model(
            "AI_STREAM_CODE_MODEL", env.get("AI_STREAM_CODE_MODEL"), AI_STREAM_CODE_MODEL
        )
    return get_configured_model(
        "AI_STREAM_DEFAULT_MODEL",
        env.get("AI_STREAM_DEFAULT_MODEL"),
        AI_STREAM_DEFAULT_MODEL,
    )
