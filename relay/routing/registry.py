"""
Model Registry — what models exist, what they cost, and who has a key.

The host owns the real registry; the engine only needs three questions
answered (providers, models per provider, credential per model), expressed
as the ModelRegistry protocol. StaticModelRegistry is an immutable snapshot
used by the CLI and tests: a fixed catalog plus environment-variable
credentials.
"""

from __future__ import annotations

import os
from typing import Iterable, Mapping, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class ModelCost(BaseModel):
    """Unit cost in USD per million tokens."""

    model_config = ConfigDict(frozen=True)

    input: float = 0.0
    output: float = 0.0


class ModelInfo(BaseModel):
    """A concrete model offered by one provider."""

    model_config = ConfigDict(frozen=True)

    provider: str
    id: str
    name: str = ""
    cost: ModelCost = Field(default_factory=ModelCost)

    @property
    def display_name(self) -> str:
        return f"{self.provider}/{self.id}" if self.provider else self.id

    @property
    def mean_cost(self) -> float:
        return (self.cost.input + self.cost.output) / 2


@runtime_checkable
class ModelRegistry(Protocol):
    def list_providers(self) -> list[str]: ...

    def list_models(self, provider: str) -> list[ModelInfo]: ...

    def get_api_key_for(self, provider: str, model_id: str) -> Optional[str]: ...


# Environment variables consulted per provider, first non-empty wins.
PROVIDER_ENV_VARS: dict[str, tuple[str, ...]] = {
    "anthropic": ("ANTHROPIC_API_KEY",),
    "openai": ("OPENAI_API_KEY",),
    "google": ("GEMINI_API_KEY", "GOOGLE_API_KEY"),
    "xai": ("XAI_API_KEY",),
    "zai": ("ZAI_API_KEY",),
    "opencode": ("OPENCODE_API_KEY",),
    "openrouter": ("OPENROUTER_API_KEY",),
    "mistral": ("MISTRAL_API_KEY",),
    "minimax": ("MINIMAX_API_KEY",),
    "moonshotai": ("MOONSHOT_API_KEY",),
    "alibaba": ("DASHSCOPE_API_KEY",),
    "deepseek": ("DEEPSEEK_API_KEY",),
}


class StaticModelRegistry:
    """Fixed catalog with env-var credentials.

    ``env`` defaults to the live ``os.environ`` so keys exported after
    construction are still seen.
    """

    def __init__(
        self,
        models: Iterable[ModelInfo],
        env: Optional[Mapping[str, str]] = None,
        env_vars: Optional[Mapping[str, tuple[str, ...]]] = None,
    ) -> None:
        self._models: dict[str, list[ModelInfo]] = {}
        for model in models:
            self._models.setdefault(model.provider, []).append(model)
        self._env = env
        self._env_vars = dict(env_vars) if env_vars is not None else PROVIDER_ENV_VARS

    def list_providers(self) -> list[str]:
        return list(self._models)

    def list_models(self, provider: str) -> list[ModelInfo]:
        return list(self._models.get(provider, []))

    def get_api_key_for(self, provider: str, model_id: str) -> Optional[str]:
        env = self._env if self._env is not None else os.environ
        for var in self._env_vars.get(provider, ()):
            value = env.get(var, "").strip()
            if value:
                return value
        return None


class ProviderScopedRegistry:
    """View of another registry limited to a set of providers.

    Used to hand the classifier a snapshot containing only providers that a
    completion backend can actually reach.
    """

    def __init__(self, inner: ModelRegistry, providers: Iterable[str]) -> None:
        self._inner = inner
        self._providers = set(providers)

    def list_providers(self) -> list[str]:
        return [p for p in self._inner.list_providers() if p in self._providers]

    def list_models(self, provider: str) -> list[ModelInfo]:
        if provider not in self._providers:
            return []
        return self._inner.list_models(provider)

    def get_api_key_for(self, provider: str, model_id: str) -> Optional[str]:
        return self._inner.get_api_key_for(provider, model_id)


def all_models(registry: ModelRegistry) -> list[ModelInfo]:
    """Flatten a registry into one list in provider order."""
    models: list[ModelInfo] = []
    for provider in registry.list_providers():
        models.extend(registry.list_models(provider))
    return models


def _m(provider: str, model_id: str, name: str, input_cost: float, output_cost: float) -> ModelInfo:
    return ModelInfo(
        provider=provider,
        id=model_id,
        name=name,
        cost=ModelCost(input=input_cost, output=output_cost),
    )


BUILTIN_MODELS: tuple[ModelInfo, ...] = (
    _m("anthropic", "claude-opus-4-6", "Claude Opus 4.6", 5.0, 25.0),
    _m("anthropic", "claude-sonnet-4-5", "Claude Sonnet 4.5", 3.0, 15.0),
    _m("anthropic", "claude-haiku-4-5", "Claude Haiku 4.5", 1.0, 5.0),
    _m("openai", "gpt-5.2", "GPT-5.2", 1.75, 14.0),
    _m("openai", "gpt-5.1", "GPT-5.1", 1.25, 10.0),
    _m("openai", "gpt-5.1-codex", "GPT-5.1 Codex", 1.25, 10.0),
    _m("openai", "gpt-5.1-codex-mini", "GPT-5.1 Codex Mini", 0.25, 2.0),
    _m("openai", "gpt-5-mini", "GPT-5 Mini", 0.25, 2.0),
    _m("openai", "gpt-5-nano", "GPT-5 Nano", 0.05, 0.4),
    _m("google", "gemini-3-pro-preview", "Gemini 3 Pro", 2.0, 12.0),
    _m("google", "gemini-3-flash-preview", "Gemini 3 Flash", 0.5, 3.0),
    _m("google", "gemini-2.5-pro", "Gemini 2.5 Pro", 1.25, 10.0),
    _m("google", "gemini-2.5-flash", "Gemini 2.5 Flash", 0.3, 2.5),
    _m("google", "gemini-2.5-flash-lite", "Gemini 2.5 Flash Lite", 0.1, 0.4),
    _m("xai", "grok-4", "Grok 4", 3.0, 15.0),
    _m("xai", "grok-code-fast-1", "Grok Code Fast", 0.2, 1.5),
    _m("zai", "glm-5", "GLM-5", 1.0, 3.2),
    _m("opencode", "glm-5", "GLM-5", 1.0, 3.2),
    _m("mistral", "devstral-2", "Devstral 2", 0.4, 2.0),
    _m("alibaba", "qwen3-max", "Qwen3 Max", 1.2, 6.0),
    _m("minimax", "MiniMax-M2.1", "MiniMax M2.1", 0.3, 1.2),
    _m("moonshotai", "kimi-k2", "Kimi K2", 0.6, 2.5),
)


def default_registry(env: Optional[Mapping[str, str]] = None) -> StaticModelRegistry:
    return StaticModelRegistry(BUILTIN_MODELS, env=env)
