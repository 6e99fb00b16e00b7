"""
Model Router — from a task description to a model with credentials.

Decision flow for one invocation:

  1. Per-call model override → must resolve (``explicit``) or the call fails.
  2. Agent frontmatter model → used if it resolves (``agent-frontmatter``),
     otherwise logged and ignored.
  3. Routing disabled → inherit the parent's model (``fallback``).
  4. Auto-route → classify, rank by capability and cost, walk the ranking
     until a provider with credentials turns up (``auto-routed``).
  5. Nothing viable → inherit the parent's model, or report why not.

An ``auto-*`` keyword in place of a model name (per call or in frontmatter)
skips steps 1–3 and forces auto-routing with that cost preference, even when
routing is disabled in settings.

Routing configuration is read fresh on every call from the global and
project settings files. Each field is decoded on its own, so a typo in one
key never discards the rest.
"""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Annotated, Any, Literal, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, StrictBool, TypeAdapter, ValidationError

from relay.routing.classifier import ClassificationResult, TaskClassifier, fallback_classification
from relay.routing.matrix import ModelRatings, TaskType, get_model_ratings, load_matrix_overrides
from relay.routing.registry import ModelInfo, ModelRegistry, all_models
from relay.routing.resolver import list_available_models, resolve_model_candidates
from relay.settings_file import global_settings_path, load_settings, project_settings_path

logger = structlog.get_logger(__name__)

CostPreference = Literal["eco", "balanced", "premium"]
RoutingMode = Literal["balanced", "cheap", "fast", "quality", "reliable"]

ROUTING_KEYWORDS: dict[str, CostPreference] = {
    "auto-cheap": "eco",
    "auto-eco": "eco",
    "auto-balanced": "balanced",
    "auto-premium": "premium",
}


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ModePolicy(BaseModel):
    """Signal thresholds applied when ranking under a routing mode."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    min_uptime: Optional[float] = Field(None, ge=0.0, le=1.0, alias="minUptime")
    max_latency_ms: Optional[float] = Field(None, gt=0, alias="maxLatencyMs")


DEFAULT_MODE_POLICIES: dict[str, ModePolicy] = {
    "reliable": ModePolicy(min_uptime=0.95),
}


class RoutingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = True
    primary_type: TaskType = Field("code", alias="primaryType")
    cost_preference: CostPreference = Field("balanced", alias="costPreference")
    mode: RoutingMode = "balanced"
    signals_max_age_ms: int = Field(300_000, alias="signalsMaxAgeMs")
    matrix_overrides_path: Optional[str] = Field(None, alias="matrixOverridesPath")
    signals_snapshot_path: Optional[str] = Field(None, alias="signalsSnapshotPath")
    mode_policy_overrides: Optional[dict[RoutingMode, ModePolicy]] = Field(
        None, alias="modePolicyOverrides"
    )


_NonEmptyStr = Annotated[str, Field(min_length=1, strict=True)]

# field name -> (settings key, decoder)
_FIELD_DECODERS: dict[str, tuple[str, TypeAdapter]] = {
    "enabled": ("enabled", TypeAdapter(StrictBool)),
    "primary_type": ("primaryType", TypeAdapter(TaskType)),
    "cost_preference": ("costPreference", TypeAdapter(CostPreference)),
    "mode": ("mode", TypeAdapter(RoutingMode)),
    "signals_max_age_ms": ("signalsMaxAgeMs", TypeAdapter(Annotated[int, Field(gt=0, strict=True)])),
    "matrix_overrides_path": ("matrixOverridesPath", TypeAdapter(_NonEmptyStr)),
    "signals_snapshot_path": ("signalsSnapshotPath", TypeAdapter(_NonEmptyStr)),
    "mode_policy_overrides": ("modePolicyOverrides", TypeAdapter(dict[RoutingMode, ModePolicy])),
}


def _decode_routing_fields(routing: dict[str, Any], source: str) -> dict[str, Any]:
    decoded: dict[str, Any] = {}
    for field_name, (key, decoder) in _FIELD_DECODERS.items():
        if key in routing:
            raw = routing[key]
        elif field_name in routing:
            raw = routing[field_name]
        else:
            continue
        try:
            decoded[field_name] = decoder.validate_python(raw)
        except ValidationError:
            logger.warning("router.invalid_setting", source=source, setting=key, value=repr(raw)[:80])
    return decoded


def load_routing_config(
    cwd: Optional[Path | str] = None,
    *,
    home: Optional[Path] = None,
) -> RoutingConfig:
    """Global settings, then project settings, merged per field.

    Never raises: unreadable files and invalid values fall back to the value
    from the previous layer, or the built-in default.
    """
    values: dict[str, Any] = {}
    try:
        layers = [
            ("global", global_settings_path(home)),
            ("project", project_settings_path(cwd if cwd is not None else Path.cwd())),
        ]
    except OSError:
        return RoutingConfig()

    for source, path in layers:
        routing = load_settings(path).get("routing")
        if routing is None:
            continue
        if not isinstance(routing, dict):
            logger.warning("router.routing_not_an_object", source=source, path=str(path))
            continue
        values.update(_decode_routing_fields(routing, source))
    return RoutingConfig(**values)


def parse_routing_keyword(value: Optional[str]) -> Optional[CostPreference]:
    """Map ``auto-cheap`` / ``auto-eco`` / ``auto-balanced`` / ``auto-premium``."""
    if not value:
        return None
    return ROUTING_KEYWORDS.get(value.strip().lower())


MODE_COST_PREFERENCES: dict[str, CostPreference] = {
    "cheap": "eco",
    "quality": "premium",
}


def cost_preference_for_mode(mode: RoutingMode) -> Optional[CostPreference]:
    """Cost preference implied by a configured routing mode, if any."""
    return MODE_COST_PREFERENCES.get(mode)


def routing_mode_for(cost_preference: CostPreference, configured_mode: RoutingMode) -> RoutingMode:
    if cost_preference == "eco":
        return "cheap"
    if cost_preference == "premium":
        return "quality"
    return configured_mode


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

class RouteSignal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    latency_p90_ms: Optional[float] = Field(None, ge=0, alias="latencyP90Ms")
    uptime: Optional[float] = Field(None, ge=0.0, le=1.0)


class SignalsSnapshot(BaseModel):
    """Observed per-route latency and uptime, keyed by ``provider/id``."""

    model_config = ConfigDict(populate_by_name=True)

    generated_at_ms: int = Field(alias="generatedAtMs")
    routes: dict[str, RouteSignal] = Field(default_factory=dict)


def load_signals_snapshot(
    path: Path | str,
    max_age_ms: int,
    now_ms: Optional[int] = None,
) -> Optional[SignalsSnapshot]:
    """Load a signals snapshot, or None if missing, invalid, or stale."""
    p = Path(path).expanduser()
    try:
        snapshot = SignalsSnapshot.model_validate(json.loads(p.read_text(encoding="utf-8")))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("router.signals_invalid", path=str(p), error=str(exc)[:200])
        return None
    now = now_ms if now_ms is not None else int(time.time() * 1000)
    if now - snapshot.generated_at_ms > max_age_ms:
        logger.info("router.signals_stale", path=str(p), age_ms=now - snapshot.generated_at_ms)
        return None
    return snapshot


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

class SelectOptions(BaseModel):
    routing_mode: RoutingMode = "balanced"
    signals: Optional[SignalsSnapshot] = None
    matrix_overrides: Optional[dict[str, ModelRatings]] = None
    mode_policy_overrides: Optional[dict[RoutingMode, ModePolicy]] = None


def _apply_mode_policy(ranked: list[ModelInfo], options: SelectOptions) -> list[ModelInfo]:
    signals = options.signals
    if signals is None or not ranked:
        return ranked
    overrides = options.mode_policy_overrides or {}
    policy = overrides.get(options.routing_mode) or DEFAULT_MODE_POLICIES.get(options.routing_mode)

    def signal_for(model: ModelInfo) -> Optional[RouteSignal]:
        return signals.routes.get(model.display_name)

    result = ranked
    if policy is not None:
        kept = []
        for model in ranked:
            sig = signal_for(model)
            if sig is not None:
                if policy.min_uptime is not None and sig.uptime is not None and sig.uptime < policy.min_uptime:
                    continue
                if (
                    policy.max_latency_ms is not None
                    and sig.latency_p90_ms is not None
                    and sig.latency_p90_ms > policy.max_latency_ms
                ):
                    continue
            kept.append(model)
        # A policy narrows the field; it never empties it.
        if kept:
            result = kept

    if options.routing_mode == "fast":
        def latency(m: ModelInfo) -> float:
            sig = signal_for(m)
            return sig.latency_p90_ms if sig and sig.latency_p90_ms is not None else float("inf")

        result = sorted(result, key=latency)
    elif options.routing_mode == "reliable":
        def unreliability(m: ModelInfo) -> float:
            sig = signal_for(m)
            return -(sig.uptime if sig and sig.uptime is not None else -1.0)

        result = sorted(result, key=unreliability)
    return result


def select_models(
    classification: ClassificationResult,
    cost_preference: CostPreference,
    registry: ModelRegistry,
    options: Optional[SelectOptions] = None,
) -> list[ModelInfo]:
    """Rank every model that is rated at least ``complexity`` for ``type``.

    - eco: ascending cost
    - premium: descending cost
    - balanced: exact-rating matches first, then ascending cost

    Models absent from the matrix or unrated for the type are excluded.
    Returns an empty list when nothing qualifies.
    """
    opts = options or SelectOptions()
    task_type, complexity = classification.type, classification.complexity

    qualified: list[tuple[ModelInfo, int]] = []
    for model in all_models(registry):
        ratings = get_model_ratings(model.id, opts.matrix_overrides)
        if not ratings:
            continue
        rating = ratings.get(task_type)
        if rating is None or rating < complexity:
            continue
        qualified.append((model, rating))

    if cost_preference == "eco":
        qualified.sort(key=lambda pair: pair[0].mean_cost)
    elif cost_preference == "premium":
        qualified.sort(key=lambda pair: pair[0].mean_cost, reverse=True)
    else:
        qualified.sort(key=lambda pair: (0 if pair[1] == complexity else 1, pair[0].mean_cost))

    return _apply_mode_policy([model for model, _ in qualified], opts)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class RoutingHints(BaseModel):
    """Per-call overrides the parent agent may pass alongside a task."""

    cost_preference: Optional[CostPreference] = None
    task_type: Optional[TaskType] = None
    complexity: Optional[int] = None


class RoutingSuccess(BaseModel):
    ok: Literal[True] = True
    model: ModelInfo
    fallbacks: list[ModelInfo] = Field(default_factory=list)
    reason: Literal["explicit", "agent-frontmatter", "auto-routed", "fallback"]
    classification: Optional[ClassificationResult] = None


class RoutingFailure(BaseModel):
    ok: Literal[False] = False
    query: str
    error: str
    reason: Literal["unresolved_model", "no_qualifying_model", "no_credentials", "no_parent_model"]
    classification: Optional[ClassificationResult] = None


RoutingResult = RoutingSuccess | RoutingFailure


def _clamp_complexity(value: int) -> int:
    return max(1, min(5, int(value)))


class ModelRouter:
    """Routes one invocation at a time against a fixed registry snapshot."""

    def __init__(
        self,
        registry: ModelRegistry,
        classifier: Optional[TaskClassifier] = None,
        *,
        home: Optional[Path] = None,
    ) -> None:
        self._registry = registry
        self._classifier = classifier
        self._home = home

    @property
    def registry(self) -> ModelRegistry:
        return self._registry

    def _has_credentials(self, model: ModelInfo) -> bool:
        return bool(self._registry.get_api_key_for(model.provider, model.id))

    def resolve_hint(self, query: str) -> Optional[ModelInfo]:
        """Fuzzy-resolve a model hint, preferring a provider with credentials.

        Falls back to the first candidate when none has a key; callers check
        credentials before dispatching to it.
        """
        candidates = resolve_model_candidates(query, self._registry)
        if not candidates:
            return None
        for candidate in candidates:
            if self._has_credentials(candidate):
                return candidate
        return candidates[0]

    async def classify(
        self,
        task: str,
        primary_type: TaskType,
        agent_role: Optional[str],
        hints: RoutingHints,
    ) -> ClassificationResult:
        if hints.task_type is not None and hints.complexity is not None:
            return ClassificationResult(
                type=hints.task_type,
                complexity=_clamp_complexity(hints.complexity),
                reasoning="per-call hints (type + complexity)",
            )
        if self._classifier is not None:
            classification = await self._classifier.classify(task, primary_type, agent_role)
        else:
            classification = fallback_classification(primary_type)
        if hints.task_type is not None:
            classification = classification.model_copy(
                update={"type": hints.task_type, "reasoning": "per-call hint (type)"}
            )
        if hints.complexity is not None:
            classification = classification.model_copy(
                update={
                    "complexity": _clamp_complexity(hints.complexity),
                    "reasoning": "per-call hint (complexity)",
                }
            )
        return classification

    def _missing_credentials(self, query: str, model: ModelInfo) -> RoutingFailure:
        logger.warning("router.hint_without_credentials", query=query, model=model.display_name)
        return RoutingFailure(
            query=query,
            error=f'No credentials available for "{query}" (resolved to {model.display_name})',
            reason="no_credentials",
        )

    def _inherit_parent(
        self,
        parent_model: Optional[str],
        failure: RoutingFailure,
    ) -> RoutingResult:
        if not parent_model:
            return failure
        resolved = self.resolve_hint(parent_model) or ModelInfo(provider="", id=parent_model)
        logger.info(
            "router.fallback",
            model=resolved.display_name,
            cause=failure.reason,
        )
        return RoutingSuccess(
            model=resolved,
            reason="fallback",
            classification=failure.classification,
        )

    def _select_options(self, config: RoutingConfig, mode: RoutingMode) -> SelectOptions:
        overrides = (
            load_matrix_overrides(config.matrix_overrides_path)
            if config.matrix_overrides_path
            else None
        )
        signals = (
            load_signals_snapshot(config.signals_snapshot_path, config.signals_max_age_ms)
            if config.signals_snapshot_path
            else None
        )
        return SelectOptions(
            routing_mode=mode,
            signals=signals,
            matrix_overrides=overrides,
            mode_policy_overrides=config.mode_policy_overrides,
        )

    async def route(
        self,
        task: str,
        *,
        model_override: Optional[str] = None,
        agent_model: Optional[str] = None,
        parent_model: Optional[str] = None,
        agent_role: Optional[str] = None,
        hints: Optional[RoutingHints] = None,
        cwd: Optional[Path | str] = None,
    ) -> RoutingResult:
        hints = hints or RoutingHints()
        keyword_pref: Optional[CostPreference] = None

        if model_override:
            keyword_pref = parse_routing_keyword(model_override)
            if keyword_pref is None:
                resolved = self.resolve_hint(model_override)
                if resolved is not None and not self._has_credentials(resolved):
                    return self._missing_credentials(model_override, resolved)
                if resolved is not None:
                    logger.info("router.explicit", query=model_override, model=resolved.display_name)
                    return RoutingSuccess(model=resolved, reason="explicit")
                available = ", ".join(list_available_models(self._registry)[:15])
                return RoutingFailure(
                    query=model_override,
                    error=f'Model "{model_override}" not found in registry. Available: {available}',
                    reason="unresolved_model",
                )

        if keyword_pref is None and agent_model:
            keyword_pref = parse_routing_keyword(agent_model)
            if keyword_pref is None:
                resolved = self.resolve_hint(agent_model)
                if resolved is not None and not self._has_credentials(resolved):
                    return self._missing_credentials(agent_model, resolved)
                if resolved is not None:
                    logger.info("router.agent_frontmatter", query=agent_model, model=resolved.display_name)
                    return RoutingSuccess(model=resolved, reason="agent-frontmatter")
                logger.warning("router.agent_model_unresolved", query=agent_model)

        config = load_routing_config(cwd, home=self._home)
        if not config.enabled and keyword_pref is None:
            return self._inherit_parent(
                parent_model,
                RoutingFailure(
                    query=task[:80],
                    error="Routing is disabled and there is no parent model to inherit",
                    reason="no_parent_model",
                ),
            )

        cost_pref: CostPreference = (
            hints.cost_preference
            or keyword_pref
            or cost_preference_for_mode(config.mode)
            or config.cost_preference
        )
        mode = routing_mode_for(cost_pref, config.mode)
        classification = await self.classify(task, config.primary_type, agent_role, hints)
        ranked = select_models(classification, cost_pref, self._registry, self._select_options(config, mode))
        viable = [m for m in ranked if self._has_credentials(m)]

        if viable:
            logger.info(
                "router.auto_routed",
                model=viable[0].display_name,
                fallbacks=len(viable) - 1,
                cost_preference=cost_pref,
                mode=mode,
                type=classification.type,
                complexity=classification.complexity,
            )
            return RoutingSuccess(
                model=viable[0],
                fallbacks=viable[1:],
                reason="auto-routed",
                classification=classification,
            )

        if not ranked:
            failure = RoutingFailure(
                query=task[:80],
                error=(
                    f"No model is rated {classification.type} >= {classification.complexity}"
                ),
                reason="no_qualifying_model",
                classification=classification,
            )
        else:
            names = ", ".join(m.display_name for m in ranked[:5])
            failure = RoutingFailure(
                query=task[:80],
                error=f"No credentials available for any qualifying model ({names})",
                reason="no_credentials",
                classification=classification,
            )
        return self._inherit_parent(parent_model, failure)
