"""AI backend flags, web search configuration and the search cooldown."""

import logging
import os
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum

from services.errors import ConfigurationError
from utils.constants import (
    WEB_SEARCH_DEFAULT_MAX_RESULTS,
    WEB_SEARCH_DEFAULT_QUOTA_COOLDOWN_MS,
    WEB_SEARCH_DEFAULT_TIMEOUT_MS,
)

logger = logging.getLogger(__name__)


class AIBackendMode(str, Enum):
    """Strategy used to produce an AI answer."""

    ANTHROPIC_TAVILY = "anthropic_tavily"
    ANTHROPIC_NATIVE_WEB = "anthropic_native_web"
    BEDROCK_CONVERSE = "bedrock_converse"


class SearchDriver(str, Enum):
    """Provider of web search results."""

    AUTO = "auto"
    TAVILY = "tavily"
    ANTHROPIC_WEB_SEARCH = "anthropic_web_search"


DEFAULT_BACKEND_MODE = AIBackendMode.ANTHROPIC_NATIVE_WEB


@dataclass
class EffectiveAIFlags:
    """Backend configuration after validation and fallback."""

    backend_mode: AIBackendMode
    search_driver: SearchDriver
    fail_open: bool
    sdk_enabled: bool
    fallback_applied: bool = False
    reason: str | None = None


@dataclass
class WebSearchConfig:
    enabled: bool = True
    max_results: int = WEB_SEARCH_DEFAULT_MAX_RESULTS
    timeout_ms: int = WEB_SEARCH_DEFAULT_TIMEOUT_MS
    quota_cooldown_ms: int = WEB_SEARCH_DEFAULT_QUOTA_COOLDOWN_MS


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value == "true":
        return True
    if value == "false":
        return False
    return fallback


def _parse_positive_int(value: str | None, fallback: int) -> int:
    try:
        parsed = int(value or "")
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


def _resolve_auto_driver(backend_mode: AIBackendMode) -> SearchDriver:
    if backend_mode == AIBackendMode.ANTHROPIC_TAVILY:
        return SearchDriver.TAVILY
    return SearchDriver.ANTHROPIC_WEB_SEARCH


def resolve_ai_flags(env: Mapping[str, str] | None = None) -> EffectiveAIFlags:
    """Resolve the effective AI backend flags from the environment.

    Invalid values fall back to the defaults and are reported through
    ``fallback_applied`` and ``reason``.

    Args:
        env: Environment mapping, defaults to ``os.environ``

    Returns:
        The effective flags, with ``search_driver`` never AUTO

    Raises:
        ConfigurationError: If the SDK backend is selected while disabled and
            fail-open is off
    """
    env = os.environ if env is None else env
    fail_open = _parse_bool(env.get("AI_FLAG_FAIL_OPEN"), True)
    sdk_enabled = _parse_bool(env.get("AI_SDK_ENABLED"), False)
    reasons: list[str] = []

    raw_mode = env.get("AI_BACKEND_MODE")
    try:
        backend_mode = AIBackendMode(raw_mode) if raw_mode else DEFAULT_BACKEND_MODE
    except ValueError:
        backend_mode = DEFAULT_BACKEND_MODE
        reasons.append(f'Invalid AI_BACKEND_MODE "{raw_mode}"')

    raw_driver = env.get("AI_SEARCH_DRIVER")
    try:
        search_driver = SearchDriver(raw_driver) if raw_driver else SearchDriver.AUTO
    except ValueError:
        search_driver = SearchDriver.AUTO
        reasons.append(f'Invalid AI_SEARCH_DRIVER "{raw_driver}"')

    if backend_mode == AIBackendMode.BEDROCK_CONVERSE and not sdk_enabled:
        if not fail_open:
            raise ConfigurationError(
                "AI_SDK_ENABLED=false but AI_BACKEND_MODE=bedrock_converse"
            )
        backend_mode = DEFAULT_BACKEND_MODE
        search_driver = SearchDriver.AUTO
        reasons.append("AI_SDK_ENABLED=false")

    if search_driver == SearchDriver.AUTO:
        search_driver = _resolve_auto_driver(backend_mode)

    flags = EffectiveAIFlags(
        backend_mode=backend_mode,
        search_driver=search_driver,
        fail_open=fail_open,
        sdk_enabled=sdk_enabled,
        fallback_applied=bool(reasons),
        reason="; ".join(reasons) or None,
    )
    if flags.fallback_applied:
        logger.warning(
            "AI flags fell back to %s: %s", flags.backend_mode.value, flags.reason
        )
    return flags


def get_web_search_config(env: Mapping[str, str] | None = None) -> WebSearchConfig:
    env = os.environ if env is None else env
    return WebSearchConfig(
        enabled=env.get("AI_WEB_SEARCH_ENABLED") != "false",
        max_results=_parse_positive_int(
            env.get("AI_WEB_SEARCH_MAX_RESULTS"), WEB_SEARCH_DEFAULT_MAX_RESULTS
        ),
        timeout_ms=_parse_positive_int(
            env.get("AI_WEB_SEARCH_TIMEOUT_MS"), WEB_SEARCH_DEFAULT_TIMEOUT_MS
        ),
        quota_cooldown_ms=_parse_positive_int(
            env.get("AI_WEB_SEARCH_QUOTA_COOLDOWN_MS"),
            WEB_SEARCH_DEFAULT_QUOTA_COOLDOWN_MS,
        ),
    )


class SearchCooldown:
    """Remembers that web search is disabled until a point in time.

    The deadline is a single float replaced atomically, so it is safe to share
    across threads without a lock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._disabled_until = 0.0

    def is_disabled(self) -> bool:
        return self.clock() < self._disabled_until

    def disable(self, cooldown_ms: int) -> None:
        self._disabled_until = self.clock() + cooldown_ms / 1000
        logger.warning("Web search disabled for %.0fs after quota error", cooldown_ms / 1000)

    def remaining_seconds(self) -> float:
        return max(0.0, self._disabled_until - self.clock())

    def reset(self) -> None:
        self._disabled_until = 0.0


# Process-wide cooldown shared by every AI turn
search_cooldown = SearchCooldown()
