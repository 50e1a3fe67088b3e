"""Tests for AI flag resolution, model selection and search detection."""

import pytest

from services.ai_config import (
    AIBackendMode,
    SearchCooldown,
    SearchDriver,
    get_web_search_config,
    resolve_ai_flags,
)
from services.errors import ConfigurationError
from services.model_selector import resolve_model, should_use_code_model
from services.recency_detector import should_use_web_search


class TestResolveAIFlags:
    """Tests for resolve_ai_flags."""

    def test_defaults(self):
        flags = resolve_ai_flags({})
        assert flags.backend_mode == AIBackendMode.ANTHROPIC_NATIVE_WEB
        assert flags.search_driver == SearchDriver.ANTHROPIC_WEB_SEARCH
        assert flags.fail_open is True
        assert flags.sdk_enabled is False
        assert not flags.fallback_applied

    def test_tavily_mode_resolves_auto_driver_to_tavily(self):
        flags = resolve_ai_flags({"AI_BACKEND_MODE": "anthropic_tavily"})
        assert flags.search_driver == SearchDriver.TAVILY

    def test_invalid_mode_falls_back_with_reason(self):
        flags = resolve_ai_flags({"AI_BACKEND_MODE": "gpt_magic"})
        assert flags.backend_mode == AIBackendMode.ANTHROPIC_NATIVE_WEB
        assert flags.fallback_applied
        assert "gpt_magic" in flags.reason

    def test_invalid_driver_falls_back(self):
        flags = resolve_ai_flags({"AI_SEARCH_DRIVER": "bing"})
        assert flags.search_driver == SearchDriver.ANTHROPIC_WEB_SEARCH
        assert flags.fallback_applied

    def test_disabled_sdk_fails_open(self):
        flags = resolve_ai_flags(
            {"AI_BACKEND_MODE": "bedrock_converse", "AI_SEARCH_DRIVER": "tavily"}
        )
        assert flags.backend_mode == AIBackendMode.ANTHROPIC_NATIVE_WEB
        assert flags.search_driver == SearchDriver.ANTHROPIC_WEB_SEARCH
        assert flags.reason == "AI_SDK_ENABLED=false"

    def test_disabled_sdk_fails_closed(self):
        with pytest.raises(ConfigurationError):
            resolve_ai_flags(
                {"AI_BACKEND_MODE": "bedrock_converse", "AI_FLAG_FAIL_OPEN": "false"}
            )

    def test_enabled_sdk(self):
        flags = resolve_ai_flags(
            {"AI_BACKEND_MODE": "bedrock_converse", "AI_SDK_ENABLED": "true"}
        )
        assert flags.backend_mode == AIBackendMode.BEDROCK_CONVERSE


class TestWebSearchConfig:
    def test_defaults_and_invalid_numbers(self):
        config = get_web_search_config(
            {"AI_WEB_SEARCH_MAX_RESULTS": "-3", "AI_WEB_SEARCH_TIMEOUT_MS": "soon"}
        )
        assert config.enabled
        assert config.max_results == 5
        assert config.timeout_ms == 6000
        assert config.quota_cooldown_ms == 3600000

    def test_disabled(self):
        assert not get_web_search_config({"AI_WEB_SEARCH_ENABLED": "false"}).enabled


class TestSearchCooldown:
    def test_cooldown_expires(self, clock):
        cooldown = SearchCooldown(clock=clock)
        assert not cooldown.is_disabled()
        cooldown.disable(60000)
        assert cooldown.is_disabled()
        assert cooldown.remaining_seconds() == 60
        clock.advance(60)
        assert not cooldown.is_disabled()


class TestModelSelector:
    """Tests for code model routing."""

    def test_action_plus_language_routes_to_code_model(self):
        assert should_use_code_model("write a function to reverse a string in python")
        assert resolve_model("write a function to reverse a string in python", env={}) == (
            "claude-sonnet-4-5"
        )

    def test_concept_request_routes_to_default_model(self):
        assert not should_use_code_model("explain what reversing a string means")
        assert resolve_model("explain what reversing a string means", env={}) == (
            "claude-haiku-4-5"
        )

    def test_concept_only_wording_ignores_code_context(self):
        assert not should_use_code_model(
            "summarize this in python terms", target_message_content="const x = 1"
        )
        # An action hint outranks the concept wording
        assert should_use_code_model("explain it, then implement it in python")

    def test_code_pattern_in_instruction(self):
        assert should_use_code_model("why does this fail?\n```\nx = 1/0\n```")
        assert should_use_code_model("Traceback (most recent call last): boom")

    def test_action_with_code_in_target_message(self):
        assert should_use_code_model(
            "please refactor this", target_message_content="const total = items.length"
        )

    def test_code_in_target_alone_is_not_enough(self):
        assert not should_use_code_model(
            "what do you think?", target_message_content="const total = 1"
        )

    def test_custom_prompt_counts_as_instruction(self):
        assert should_use_code_model("hi", custom_prompt="implement it in rust")

    def test_empty_input(self):
        assert not should_use_code_model("")

    def test_configured_model_must_be_allowed(self):
        env = {"AI_STREAM_DEFAULT_MODEL": "claude-sonnet-4-5"}
        assert resolve_model("hello", env=env) == "claude-sonnet-4-5"
        env = {"AI_STREAM_DEFAULT_MODEL": "gpt-4o"}
        assert resolve_model("hello", env=env) == "claude-haiku-4-5"


class TestRecencyDetector:
    """Tests for should_use_web_search."""

    def test_recency_pattern_triggers_search(self):
        assert should_use_web_search("what's the weather today")

    def test_explicit_disable_wins(self):
        assert not should_use_web_search("no web search, what's 2+2")
        assert not should_use_web_search("no web search, what's the weather today")

    def test_explicit_force_wins(self):
        assert should_use_web_search("search the web for a pancake recipe")
        assert should_use_web_search("search the web, no web search")

    def test_model_release_heuristic(self):
        assert should_use_web_search("is claude 4.5 any good?")
        assert should_use_web_search("when was gemini released")
        assert not should_use_web_search("tell me about claude monet")

    def test_plain_question_does_not_search(self):
        assert not should_use_web_search("what's 2+2")
        assert not should_use_web_search("")

    def test_office_holder_question(self):
        assert should_use_web_search("Who is the CEO of Anthropic?")
