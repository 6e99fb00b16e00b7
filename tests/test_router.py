"""Tests for relay.routing.router — settings, ranking, and routing decisions."""

from __future__ import annotations

import json
import time

import pytest

from relay.routing.classifier import ClassificationResult, TaskClassifier
from relay.routing.matrix import get_model_ratings
from relay.routing.registry import ModelCost, ModelInfo, default_registry
from relay.routing.router import (
    ModelRouter,
    ModePolicy,
    RouteSignal,
    RoutingConfig,
    RoutingFailure,
    RoutingHints,
    RoutingSuccess,
    SelectOptions,
    SignalsSnapshot,
    cost_preference_for_mode,
    load_routing_config,
    load_signals_snapshot,
    parse_routing_keyword,
    routing_mode_for,
    select_models,
)
from tests.conftest import MockCompleter, make_registry


def _write_settings(path, routing) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"routing": routing}))


@pytest.fixture()
def relay_home(tmp_path):
    home = tmp_path / "relay-home"
    home.mkdir()
    return home


@pytest.fixture()
def project(tmp_path):
    p = tmp_path / "project"
    p.mkdir()
    return p


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestLoadRoutingConfig:
    def test_defaults_without_files(self, relay_home, project) -> None:
        config = load_routing_config(project, home=relay_home)
        assert config == RoutingConfig()
        assert config.enabled is True
        assert config.primary_type == "code"
        assert config.cost_preference == "balanced"
        assert config.mode == "balanced"

    def test_project_overrides_global(self, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"costPreference": "eco", "primaryType": "text"})
        _write_settings(project / ".relay" / "settings.json", {"costPreference": "premium"})
        config = load_routing_config(project, home=relay_home)
        assert config.cost_preference == "premium"
        assert config.primary_type == "text"

    def test_invalid_field_falls_back_per_field(self, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"mode": "fast", "costPreference": "eco"})
        _write_settings(
            project / ".relay" / "settings.json",
            {"mode": "warp", "enabled": "yes", "signalsMaxAgeMs": -5, "costPreference": "premium"},
        )
        config = load_routing_config(project, home=relay_home)
        assert config.mode == "fast"
        assert config.enabled is True
        assert config.signals_max_age_ms == 300_000
        assert config.cost_preference == "premium"

    def test_snake_case_keys_accepted(self, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"cost_preference": "eco"})
        assert load_routing_config(project, home=relay_home).cost_preference == "eco"

    def test_unreadable_file_ignored(self, relay_home, project) -> None:
        (relay_home / "settings.json").write_text("{broken")
        assert load_routing_config(project, home=relay_home) == RoutingConfig()

    def test_routing_not_an_object(self, relay_home, project) -> None:
        (relay_home / "settings.json").write_text(json.dumps({"routing": ["eco"]}))
        assert load_routing_config(project, home=relay_home) == RoutingConfig()

    def test_mode_policy_overrides(self, relay_home, project) -> None:
        _write_settings(
            relay_home / "settings.json",
            {"modePolicyOverrides": {"fast": {"maxLatencyMs": 800}}},
        )
        config = load_routing_config(project, home=relay_home)
        assert config.mode_policy_overrides == {"fast": ModePolicy(max_latency_ms=800)}

    def test_disabled(self, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"enabled": False})
        assert load_routing_config(project, home=relay_home).enabled is False


class TestKeywords:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("auto-cheap", "eco"),
            ("auto-eco", "eco"),
            ("AUTO-BALANCED", "balanced"),
            (" auto-premium ", "premium"),
            ("auto-fast", None),
            ("claude-opus-4-6", None),
            (None, None),
            ("", None),
        ],
    )
    def test_parse_routing_keyword(self, value, expected) -> None:
        assert parse_routing_keyword(value) == expected

    def test_routing_mode_for(self) -> None:
        assert routing_mode_for("eco", "reliable") == "cheap"
        assert routing_mode_for("premium", "fast") == "quality"
        assert routing_mode_for("balanced", "fast") == "fast"

    def test_cost_preference_for_mode(self) -> None:
        assert cost_preference_for_mode("cheap") == "eco"
        assert cost_preference_for_mode("quality") == "premium"
        assert cost_preference_for_mode("balanced") is None
        assert cost_preference_for_mode("fast") is None


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class TestSignalsSnapshot:
    def test_fresh_snapshot(self, tmp_path) -> None:
        path = tmp_path / "signals.json"
        now = int(time.time() * 1000)
        path.write_text(json.dumps({
            "generatedAtMs": now - 1000,
            "routes": {"openai/gpt-5.1": {"latencyP90Ms": 900, "uptime": 0.99}},
        }))
        snapshot = load_signals_snapshot(path, max_age_ms=60_000, now_ms=now)
        assert snapshot.routes["openai/gpt-5.1"].latency_p90_ms == 900

    def test_stale_snapshot(self, tmp_path) -> None:
        path = tmp_path / "signals.json"
        path.write_text(json.dumps({"generatedAtMs": 1000, "routes": {}}))
        assert load_signals_snapshot(path, max_age_ms=60_000, now_ms=1_000_000) is None

    def test_missing_and_invalid(self, tmp_path) -> None:
        assert load_signals_snapshot(tmp_path / "none.json", 1000) is None
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"routes": {}}))
        assert load_signals_snapshot(bad, 1000) is None


# ---------------------------------------------------------------------------
# select_models
# ---------------------------------------------------------------------------

def _cls(task_type: str = "code", complexity: int = 3) -> ClassificationResult:
    return ClassificationResult(type=task_type, complexity=complexity, reasoning="test")


class TestSelectModels:
    @pytest.mark.parametrize("pref", ["eco", "balanced", "premium"])
    @pytest.mark.parametrize("task_type", ["code", "vision", "text"])
    @pytest.mark.parametrize("complexity", [1, 3, 5])
    def test_every_selected_model_qualifies(self, registry, pref, task_type, complexity) -> None:
        for model in select_models(_cls(task_type, complexity), pref, registry):
            rating = get_model_ratings(model.id)[task_type]
            assert rating >= complexity

    def test_unrated_models_excluded(self, registry) -> None:
        ids = [m.id for m in select_models(_cls("code", 1), "eco", registry)]
        assert "gemini-2.5-flash" not in ids
        assert "qwen3-max" not in ids

    def test_eco_ascending_cost(self, registry) -> None:
        costs = [m.mean_cost for m in select_models(_cls("code", 3), "eco", registry)]
        assert costs == sorted(costs)

    def test_premium_descending_cost(self, registry) -> None:
        costs = [m.mean_cost for m in select_models(_cls("code", 3), "premium", registry)]
        assert costs == sorted(costs, reverse=True)

    def test_balanced_exact_rating_first(self, registry) -> None:
        ranked = select_models(_cls("code", 3), "balanced", registry)
        ratings = [get_model_ratings(m.id)["code"] for m in ranked]
        exact = [r == 3 for r in ratings]
        # All exact matches precede all over-qualified models
        assert exact == sorted(exact, reverse=True)
        exact_costs = [m.mean_cost for m, e in zip(ranked, exact) if e]
        assert exact_costs == sorted(exact_costs)
        assert ranked[0].display_name == "xai/grok-code-fast-1"

    def test_nothing_qualifies(self) -> None:
        reg = make_registry([ModelInfo(provider="openai", id="gpt-5-nano")])
        assert select_models(_cls("code", 5), "balanced", reg) == []

    def test_matrix_overrides_applied(self) -> None:
        reg = make_registry([ModelInfo(provider="openai", id="gpt-5-nano")])
        options = SelectOptions(matrix_overrides={"gpt-5-nano": {"code": 5}})
        assert [m.id for m in select_models(_cls("code", 5), "balanced", reg, options)] == ["gpt-5-nano"]


class TestModePolicy:
    @pytest.fixture()
    def small_registry(self):
        return make_registry([
            ModelInfo(provider="anthropic", id="claude-sonnet-4-5", cost=ModelCost(input=3, output=15)),
            ModelInfo(provider="openai", id="gpt-5.1", cost=ModelCost(input=1.25, output=10)),
            ModelInfo(provider="xai", id="grok-4", cost=ModelCost(input=3, output=15)),
        ])

    def _snapshot(self, routes: dict) -> SignalsSnapshot:
        return SignalsSnapshot(
            generated_at_ms=0,
            routes={k: RouteSignal(**v) for k, v in routes.items()},
        )

    def test_fast_orders_by_latency(self, small_registry) -> None:
        options = SelectOptions(
            routing_mode="fast",
            signals=self._snapshot({
                "anthropic/claude-sonnet-4-5": {"latency_p90_ms": 300},
                "openai/gpt-5.1": {"latency_p90_ms": 1200},
            }),
        )
        ranked = select_models(_cls("code", 4), "balanced", small_registry, options)
        assert [m.id for m in ranked] == ["claude-sonnet-4-5", "gpt-5.1", "grok-4"]

    def test_reliable_drops_low_uptime(self, small_registry) -> None:
        options = SelectOptions(
            routing_mode="reliable",
            signals=self._snapshot({
                "anthropic/claude-sonnet-4-5": {"uptime": 0.97},
                "openai/gpt-5.1": {"uptime": 0.5},
                "xai/grok-4": {"uptime": 0.999},
            }),
        )
        ranked = select_models(_cls("code", 4), "balanced", small_registry, options)
        assert [m.id for m in ranked] == ["grok-4", "claude-sonnet-4-5"]

    def test_policy_never_empties_the_field(self, small_registry) -> None:
        options = SelectOptions(
            routing_mode="reliable",
            signals=self._snapshot({
                "anthropic/claude-sonnet-4-5": {"uptime": 0.1},
                "openai/gpt-5.1": {"uptime": 0.2},
                "xai/grok-4": {"uptime": 0.3},
            }),
        )
        ranked = select_models(_cls("code", 4), "balanced", small_registry, options)
        assert len(ranked) == 3

    def test_no_signals_leaves_cost_order(self, small_registry) -> None:
        ranked = select_models(_cls("code", 4), "eco", small_registry, SelectOptions(routing_mode="fast"))
        assert ranked[0].id == "gpt-5.1"

    def test_policy_override(self, small_registry) -> None:
        options = SelectOptions(
            routing_mode="fast",
            signals=self._snapshot({
                "anthropic/claude-sonnet-4-5": {"latency_p90_ms": 300},
                "openai/gpt-5.1": {"latency_p90_ms": 5000},
                "xai/grok-4": {"latency_p90_ms": 700},
            }),
            mode_policy_overrides={"fast": ModePolicy(max_latency_ms=1000)},
        )
        ranked = select_models(_cls("code", 4), "balanced", small_registry, options)
        assert [m.id for m in ranked] == ["claude-sonnet-4-5", "grok-4"]


# ---------------------------------------------------------------------------
# ModelRouter.route
# ---------------------------------------------------------------------------

class TestRoute:
    @pytest.fixture()
    def router(self, registry, relay_home):
        return ModelRouter(registry, None, home=relay_home)

    @pytest.mark.asyncio
    async def test_explicit_model(self, router, project) -> None:
        result = await router.route("task", model_override="sonnet", cwd=project)
        assert isinstance(result, RoutingSuccess)
        assert result.reason == "explicit"
        assert result.model.id == "claude-sonnet-4-5"
        assert result.fallbacks == []

    @pytest.mark.asyncio
    async def test_explicit_model_unresolved(self, router, project) -> None:
        result = await router.route("task", model_override="nonexistent-model-xyz", cwd=project)
        assert isinstance(result, RoutingFailure)
        assert result.reason == "unresolved_model"
        assert result.error.startswith(
            'Model "nonexistent-model-xyz" not found in registry. Available: anthropic/claude-opus-4-6'
        )

    @pytest.mark.asyncio
    async def test_explicit_beats_agent_model(self, router, project) -> None:
        result = await router.route("t", model_override="opus", agent_model="haiku", cwd=project)
        assert result.model.id == "claude-opus-4-6"

    @pytest.mark.asyncio
    async def test_agent_frontmatter_model(self, router, project) -> None:
        result = await router.route("task", agent_model="haiku", cwd=project)
        assert result.reason == "agent-frontmatter"
        assert result.model.id == "claude-haiku-4-5"

    @pytest.mark.asyncio
    async def test_unresolved_agent_model_is_ignored(self, router, project) -> None:
        result = await router.route("task", agent_model="qqqq-unknown", cwd=project)
        assert result.reason == "auto-routed"

    @pytest.mark.asyncio
    async def test_auto_routed_fallbacks_all_have_keys(self, router, registry, project) -> None:
        result = await router.route("task", cwd=project)
        assert result.reason == "auto-routed"
        assert result.classification.reasoning == "fallback"
        for model in [result.model, *result.fallbacks]:
            assert registry.get_api_key_for(model.provider, model.id)

    @pytest.mark.asyncio
    async def test_keyword_forces_auto_routing_when_disabled(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"enabled": False})
        result = await router.route(
            "task",
            model_override="auto-eco",
            hints=RoutingHints(task_type="code", complexity=3),
            cwd=project,
        )
        assert result.reason == "auto-routed"
        assert result.model.display_name == "minimax/MiniMax-M2.1"

    @pytest.mark.asyncio
    async def test_agent_keyword_sets_cost_preference(self, router, project) -> None:
        result = await router.route(
            "task",
            agent_model="auto-premium",
            hints=RoutingHints(task_type="code", complexity=3),
            cwd=project,
        )
        ranked_costs = [m.mean_cost for m in [result.model, *result.fallbacks]]
        assert ranked_costs == sorted(ranked_costs, reverse=True)

    @pytest.mark.asyncio
    async def test_disabled_inherits_parent(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"enabled": False})
        result = await router.route("task", parent_model="opus", cwd=project)
        assert result.reason == "fallback"
        assert result.model.id == "claude-opus-4-6"

    @pytest.mark.asyncio
    async def test_disabled_without_parent_fails(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"enabled": False})
        result = await router.route("task", cwd=project)
        assert isinstance(result, RoutingFailure)
        assert result.reason == "no_parent_model"

    @pytest.mark.asyncio
    async def test_unknown_parent_model_is_passed_through(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"enabled": False})
        result = await router.route("task", parent_model="qqqq-local", cwd=project)
        assert result.model.display_name == "qqqq-local"

    @pytest.mark.asyncio
    async def test_no_credentials(self, relay_home, project) -> None:
        router = ModelRouter(default_registry(env={}), None, home=relay_home)
        result = await router.route("task", cwd=project)
        assert isinstance(result, RoutingFailure)
        assert result.reason == "no_credentials"

    @pytest.mark.asyncio
    async def test_no_credentials_inherits_parent(self, relay_home, project) -> None:
        router = ModelRouter(default_registry(env={}), None, home=relay_home)
        result = await router.route("task", parent_model="gpt-5.2", cwd=project)
        assert result.reason == "fallback"
        assert result.model.id == "gpt-5.2"

    @pytest.mark.asyncio
    async def test_no_qualifying_model(self, relay_home, project) -> None:
        reg = make_registry([ModelInfo(provider="openai", id="gpt-5-nano")])
        router = ModelRouter(reg, None, home=relay_home)
        result = await router.route(
            "task", hints=RoutingHints(task_type="code", complexity=5), cwd=project
        )
        assert isinstance(result, RoutingFailure)
        assert result.reason == "no_qualifying_model"
        assert result.classification.complexity == 5

    @pytest.mark.asyncio
    async def test_explicit_prefers_provider_with_credentials(self, relay_home, project) -> None:
        reg = default_registry(env={"OPENCODE_API_KEY": "k"})
        router = ModelRouter(reg, None, home=relay_home)
        result = await router.route("task", model_override="glm-5", cwd=project)
        assert result.model.display_name == "opencode/glm-5"

    @pytest.mark.asyncio
    async def test_full_hints_skip_classifier(self, registry, relay_home, project) -> None:
        completer = MockCompleter(reply='{"type": "text", "complexity": 1}')
        router = ModelRouter(registry, TaskClassifier(registry, completer), home=relay_home)
        result = await router.route(
            "task", hints=RoutingHints(task_type="code", complexity=9), cwd=project
        )
        assert completer.calls == []
        assert result.classification.type == "code"
        assert result.classification.complexity == 5

    @pytest.mark.asyncio
    async def test_partial_hint_overlays_classifier(self, registry, relay_home, project) -> None:
        completer = MockCompleter(reply='{"type": "text", "complexity": 1, "reasoning": "short"}')
        router = ModelRouter(registry, TaskClassifier(registry, completer), home=relay_home)
        result = await router.route("task", hints=RoutingHints(complexity=4), cwd=project)
        assert len(completer.calls) == 1
        assert result.classification.type == "text"
        assert result.classification.complexity == 4

    @pytest.mark.asyncio
    async def test_cost_hint_beats_settings(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"costPreference": "premium"})
        result = await router.route(
            "task",
            hints=RoutingHints(cost_preference="eco", task_type="code", complexity=3),
            cwd=project,
        )
        assert result.model.display_name == "minimax/MiniMax-M2.1"

    @pytest.mark.asyncio
    async def test_configured_cheap_mode_ranks_by_cost(self, router, project) -> None:
        _write_settings(project / ".relay" / "settings.json", {"mode": "cheap"})
        result = await router.route(
            "task", hints=RoutingHints(task_type="code", complexity=3), cwd=project
        )
        assert result.model.display_name == "minimax/MiniMax-M2.1"
        ranked_costs = [m.mean_cost for m in [result.model, *result.fallbacks]]
        assert ranked_costs == sorted(ranked_costs)

    @pytest.mark.asyncio
    async def test_configured_quality_mode_ranks_priciest_first(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"mode": "quality", "costPreference": "eco"})
        result = await router.route(
            "task", hints=RoutingHints(task_type="code", complexity=3), cwd=project
        )
        ranked_costs = [m.mean_cost for m in [result.model, *result.fallbacks]]
        assert ranked_costs == sorted(ranked_costs, reverse=True)

    @pytest.mark.asyncio
    async def test_cost_hint_beats_configured_mode(self, router, relay_home, project) -> None:
        _write_settings(relay_home / "settings.json", {"mode": "quality"})
        result = await router.route(
            "task",
            hints=RoutingHints(cost_preference="eco", task_type="code", complexity=3),
            cwd=project,
        )
        assert result.model.display_name == "minimax/MiniMax-M2.1"

    @pytest.mark.asyncio
    async def test_explicit_model_without_credentials(self, relay_home, project) -> None:
        router = ModelRouter(default_registry(env={}), None, home=relay_home)
        result = await router.route("task", model_override="gpt-5.1", cwd=project)
        assert isinstance(result, RoutingFailure)
        assert result.reason == "no_credentials"
        assert result.query == "gpt-5.1"
        assert "openai/gpt-5.1" in result.error

    @pytest.mark.asyncio
    async def test_agent_model_without_credentials(self, relay_home, project) -> None:
        router = ModelRouter(default_registry(env={}), None, home=relay_home)
        result = await router.route("task", agent_model="haiku", cwd=project)
        assert isinstance(result, RoutingFailure)
        assert result.reason == "no_credentials"
