"""Tests for relay.routing.classifier — the cheap sizing probe."""

from __future__ import annotations

import pytest

from relay.routing.classifier import (
    FALLBACK_COMPLEXITY,
    TaskClassifier,
    build_classifier_prompt,
    fallback_classification,
    parse_classification,
)
from relay.routing.completion import AnthropicCompleter, UnsupportedProviderError
from relay.routing.registry import ProviderScopedRegistry
from tests.conftest import MockCompleter, make_registry


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseClassification:
    def test_plain_json(self) -> None:
        result = parse_classification('{"type": "code", "complexity": 2, "reasoning": "small"}')
        assert result.type == "code"
        assert result.complexity == 2
        assert result.reasoning == "small"

    def test_fenced_block_preferred(self) -> None:
        text = 'Sure!\n```json\n{"type": "text", "complexity": 4, "reasoning": "essay"}\n```\n'
        result = parse_classification(text)
        assert result.type == "text"
        assert result.complexity == 4

    def test_json_embedded_in_prose(self) -> None:
        text = 'Here you go: {"type": "vision", "complexity": 3, "reasoning": "screenshot"} done.'
        assert parse_classification(text).type == "vision"

    def test_missing_reasoning_is_empty(self) -> None:
        assert parse_classification('{"type": "code", "complexity": 1}').reasoning == ""

    @pytest.mark.parametrize(
        "text",
        [
            "",
            "no json here",
            '{"type": "code", "complexity": 7}',
            '{"type": "code", "complexity": 0}',
            '{"type": "code", "complexity": "3"}',
            '{"type": "audio", "complexity": 3}',
            '{"type": "code"}',
            "[1, 2, 3]",
        ],
    )
    def test_invalid_replies(self, text) -> None:
        assert parse_classification(text) is None


class TestPrompt:
    def test_includes_task_and_primary_type(self) -> None:
        prompt = build_classifier_prompt("Fix the login bug", "code")
        assert "Fix the login bug" in prompt
        assert '"code"' in prompt
        assert "The agent's role" not in prompt

    def test_includes_agent_role(self) -> None:
        prompt = build_classifier_prompt("x", "text", "Security reviewer")
        assert "The agent's role: Security reviewer" in prompt


class TestFallback:
    def test_fallback_shape(self) -> None:
        result = fallback_classification("vision")
        assert result.type == "vision"
        assert result.complexity == FALLBACK_COMPLEXITY == 3
        assert result.reasoning == "fallback"


# ---------------------------------------------------------------------------
# TaskClassifier
# ---------------------------------------------------------------------------

class TestTaskClassifier:
    def test_cheapest_model(self, registry) -> None:
        classifier = TaskClassifier(registry, MockCompleter())
        assert classifier.cheapest_model().display_name == "openai/gpt-5-nano"

    def test_cheapest_model_scoped_to_provider(self, registry) -> None:
        scoped = ProviderScopedRegistry(registry, AnthropicCompleter.providers)
        classifier = TaskClassifier(scoped, MockCompleter())
        assert classifier.cheapest_model().display_name == "anthropic/claude-haiku-4-5"

    def test_cheapest_model_is_memoized_per_instance(self, registry) -> None:
        classifier = TaskClassifier(registry, MockCompleter())
        first = classifier.cheapest_model()
        other = TaskClassifier(make_registry([]), MockCompleter())
        assert other.cheapest_model() is None
        assert classifier.cheapest_model() is first

    @pytest.mark.asyncio
    async def test_trivial_rename_is_low_complexity(self, registry) -> None:
        completer = MockCompleter(
            reply='{"type": "code", "complexity": 1, "reasoning": "single rename"}'
        )
        classifier = TaskClassifier(registry, completer)
        result = await classifier.classify("rename a local variable", "code")
        assert result.type == "code"
        assert result.complexity <= 2
        assert len(completer.calls) == 1
        model, prompt = completer.calls[0]
        assert model == "openai/gpt-5-nano"
        assert "rename a local variable" in prompt

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, registry) -> None:
        completer = MockCompleter(reply='{"type": "code", "complexity": 1}', delay=1.0)
        classifier = TaskClassifier(registry, completer, timeout=0.05)
        result = await classifier.classify("anything", "text")
        assert result == fallback_classification("text")

    @pytest.mark.asyncio
    async def test_provider_error_falls_back(self, registry) -> None:
        completer = MockCompleter(error=RuntimeError("boom"))
        result = await TaskClassifier(registry, completer).classify("anything", "code")
        assert result.reasoning == "fallback"

    @pytest.mark.asyncio
    async def test_unparsable_reply_falls_back(self, registry) -> None:
        completer = MockCompleter(reply="I think it is medium hard")
        result = await TaskClassifier(registry, completer).classify("anything", "code")
        assert result.complexity == 3

    @pytest.mark.asyncio
    async def test_empty_registry_falls_back_without_probe(self) -> None:
        completer = MockCompleter(reply='{"type": "code", "complexity": 1}')
        result = await TaskClassifier(make_registry([]), completer).classify("x", "code")
        assert result.reasoning == "fallback"
        assert completer.calls == []

    @pytest.mark.asyncio
    async def test_no_completer_falls_back(self, registry) -> None:
        result = await TaskClassifier(registry, None).classify("x", "vision")
        assert result.type == "vision"


class TestAnthropicCompleter:
    @pytest.mark.asyncio
    async def test_rejects_other_providers(self, registry) -> None:
        completer = AnthropicCompleter(registry)
        model = registry.list_models("openai")[0]
        with pytest.raises(UnsupportedProviderError):
            await completer.complete(model, "hi")

    @pytest.mark.asyncio
    async def test_requires_credentials(self, keyless_registry) -> None:
        completer = AnthropicCompleter(keyless_registry)
        model = keyless_registry.list_models("anthropic")[0]
        with pytest.raises(UnsupportedProviderError, match="No credentials"):
            await completer.complete(model, "hi")
