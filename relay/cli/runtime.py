"""Wiring shared by the commands that route or run subagents."""

from __future__ import annotations

from typing import Optional

from relay.config import OrchestrationConfig
from relay.routing.classifier import TaskClassifier
from relay.routing.completion import AnthropicCompleter
from relay.routing.registry import ModelRegistry, ProviderScopedRegistry, default_registry
from relay.routing.router import ModelRouter


def build_router(
    config: OrchestrationConfig,
    registry: Optional[ModelRegistry] = None,
) -> ModelRouter:
    """A router over ``registry`` whose classifier probes through Anthropic.

    The classifier sees only the providers AnthropicCompleter can reach, so
    its probe model is the cheapest Anthropic model rather than the cheapest
    model in the whole registry. Routing itself still ranks every provider.
    """
    registry = registry or default_registry()
    completer = AnthropicCompleter(registry)
    classifier = TaskClassifier(
        ProviderScopedRegistry(registry, AnthropicCompleter.providers),
        completer,
        timeout=config.classifier_timeout,
    )
    return ModelRouter(registry, classifier, home=config.home_dir)
