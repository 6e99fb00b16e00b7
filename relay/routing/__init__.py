"""
Model Routing — choosing which model a subagent runs on.

Routing combines a static capability matrix, a fuzzy resolver over the host's
model registry, a cheap classifier probe, and layered per-project settings.
"""

from __future__ import annotations

from relay.routing.classifier import ClassificationResult, TaskClassifier
from relay.routing.registry import ModelInfo, ModelRegistry, StaticModelRegistry
from relay.routing.router import (
    ModelRouter,
    RoutingConfig,
    RoutingFailure,
    RoutingHints,
    RoutingSuccess,
    load_routing_config,
    select_models,
)

__all__ = [
    "ClassificationResult",
    "TaskClassifier",
    "ModelInfo",
    "ModelRegistry",
    "StaticModelRegistry",
    "ModelRouter",
    "RoutingConfig",
    "RoutingFailure",
    "RoutingHints",
    "RoutingSuccess",
    "load_routing_config",
    "select_models",
]
