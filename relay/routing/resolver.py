"""
Fuzzy Model Resolver — free-form model strings to concrete models.

Humans and parent agents write "opus", "gpt 5.2", "gpt5.1codex" or
"minimax/MiniMax-M2.1". The resolver tries progressively looser tiers and
stops at the first one that produces any hit:

  1. exact id
  2. case-insensitive id
  3. normalized id (separators and punctuation stripped)
  4. ``provider/id`` with a known provider
  5. token overlap against id + display name
  6. raw substring of id or display name
  7. normalized substring

Within a tier, ties go to the shorter id (canonical models tend to have
the shortest names; variants add suffixes), then to the lexicographically
larger id.
"""

from __future__ import annotations

import re
from typing import Optional

from relay.routing.registry import ModelInfo, ModelRegistry, all_models

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")
_TOKEN_RE = re.compile(r"[a-z]+|\d+")


def normalize_model_text(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text.lower())


def tokenize_model_text(text: str) -> list[str]:
    """Lowercase word tokens, splitting on separators and letter/digit edges."""
    return _TOKEN_RE.findall(text.lower())


def _order_ties(models: list[ModelInfo]) -> list[ModelInfo]:
    ordered = sorted(models, key=lambda m: m.id, reverse=True)
    ordered.sort(key=lambda m: len(m.id))
    return ordered


def _token_score(tokens: list[str], model: ModelInfo) -> int:
    haystack = f"{model.id} {model.name}".lower()
    provider = model.provider.lower()
    score = 0
    for token in tokens:
        if token in haystack:
            score += 2
        elif token in provider:
            score += 1
    return score


def _lookup_under_provider(query: str, models: list[ModelInfo]) -> list[ModelInfo]:
    provider_part, _, id_part = query.partition("/")
    provider_part = provider_part.strip().lower()
    id_part = id_part.strip()
    if not provider_part or not id_part:
        return []
    scoped = [m for m in models if m.provider.lower() == provider_part]
    if not scoped:
        return []
    for predicate in (
        lambda m: m.id == id_part,
        lambda m: m.id.lower() == id_part.lower(),
        lambda m: normalize_model_text(m.id) == normalize_model_text(id_part),
    ):
        hits = [m for m in scoped if predicate(m)]
        if hits:
            return hits
    return []


def resolve_model_candidates(query: str, registry: ModelRegistry) -> list[ModelInfo]:
    """All models tied at the first tier that matches, best first.

    Several providers can serve the same id (e.g. ``glm-5``); callers that
    care about credentials pick among these.
    """
    q = (query or "").strip()
    if not q:
        return []
    models = all_models(registry)
    lowered = q.lower()
    normalized = normalize_model_text(q)

    hits = [m for m in models if m.id == q]
    if hits:
        return _order_ties(hits)

    hits = [m for m in models if m.id.lower() == lowered]
    if hits:
        return _order_ties(hits)

    if normalized:
        hits = [m for m in models if normalize_model_text(m.id) == normalized]
        if hits:
            return _order_ties(hits)

    if "/" in q:
        hits = _lookup_under_provider(q, models)
        if hits:
            return _order_ties(hits)

    tokens = tokenize_model_text(q)
    if tokens:
        scored = [(m, _token_score(tokens, m)) for m in models]
        best = max((s for _, s in scored), default=0)
        if best > 0:
            return _order_ties([m for m, s in scored if s == best])

    hits = [m for m in models if lowered in m.id.lower() or lowered in m.name.lower()]
    if hits:
        return _order_ties(hits)

    if normalized:
        hits = [
            m
            for m in models
            if normalized in normalize_model_text(m.id)
            or normalized in normalize_model_text(m.name)
        ]
        if hits:
            return _order_ties(hits)

    return []


def resolve_model_fuzzy(query: str, registry: ModelRegistry) -> Optional[ModelInfo]:
    """Best single match for ``query``, or None."""
    candidates = resolve_model_candidates(query, registry)
    return candidates[0] if candidates else None


def list_available_models(registry: ModelRegistry) -> list[str]:
    return [m.display_name for m in all_models(registry)]
