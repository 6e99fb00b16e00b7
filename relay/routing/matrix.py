"""
Capability Matrix — per-family model ratings.

Each entry maps a model-family key to a partial rating map over task types.
Ratings run 1–5; a missing task type means the family is not suitable for
that kind of work at all (not "rated zero"). Lookups strip any provider
prefix and match the longest family key the bare id starts with, so dated
or suffixed ids ("claude-sonnet-4-5-20250929", "gemini-3-pro-preview")
still resolve to their family.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Literal, Optional

import structlog
from pydantic import Field, TypeAdapter, ValidationError

logger = structlog.get_logger(__name__)

TaskType = Literal["code", "vision", "text"]
TASK_TYPES: tuple[TaskType, ...] = ("code", "vision", "text")

ModelRatings = dict[TaskType, int]

MODEL_MATRIX: dict[str, ModelRatings] = {
    # Anthropic
    "claude-opus-4-6": {"code": 5, "vision": 3, "text": 5},
    "claude-opus-4-5": {"code": 5, "vision": 3, "text": 5},
    "claude-opus-4": {"code": 5, "vision": 3, "text": 5},
    "claude-sonnet-4-5": {"code": 4, "vision": 3, "text": 4},
    "claude-sonnet-4": {"code": 4, "vision": 3, "text": 4},
    "claude-haiku-4-5": {"code": 3, "vision": 2, "text": 3},
    "claude-3-5-haiku": {"code": 2, "vision": 2, "text": 2},
    # OpenAI
    "gpt-5.2": {"code": 5, "vision": 4, "text": 5},
    "gpt-5.1-codex-mini": {"code": 3},
    "gpt-5.1-codex": {"code": 5},
    "gpt-5.1": {"code": 4, "vision": 4, "text": 5},
    "gpt-5-mini": {"code": 3, "vision": 3, "text": 3},
    "gpt-5-nano": {"code": 2, "vision": 2, "text": 2},
    "gpt-5": {"code": 4, "vision": 4, "text": 4},
    "gpt-4.1": {"code": 3, "vision": 3, "text": 4},
    "gpt-4o-mini": {"code": 2, "vision": 2, "text": 3},
    "gpt-4o": {"code": 3, "vision": 4, "text": 4},
    # Google
    "gemini-3-pro": {"code": 4, "vision": 5, "text": 5},
    "gemini-3-flash": {"code": 3, "vision": 4, "text": 4},
    "gemini-2.5-pro": {"code": 4, "vision": 4, "text": 4},
    "gemini-2.5-flash-lite": {"vision": 3, "text": 3},
    "gemini-2.5-flash": {"vision": 4, "text": 4},
    # xAI
    "grok-code-fast": {"code": 3},
    "grok-4": {"code": 4, "vision": 3, "text": 4},
    # Open-weight / regional
    "devstral-2": {"code": 2},
    "qwen3-coder": {"code": 4},
    "qwen3-max": {"text": 4},
    "glm-5": {"code": 4, "text": 4},
    "kimi-k2": {"code": 4, "text": 4},
    "minimax-m2": {"code": 4, "text": 3},
    "deepseek-v3": {"code": 4, "text": 4},
}

Rating = Annotated[int, Field(ge=1, le=5, strict=True)]
_OVERRIDES_ADAPTER = TypeAdapter(dict[str, dict[TaskType, Rating]])


def bare_model_id(model_id: str) -> str:
    """Strip a ``provider/`` prefix and lowercase."""
    return model_id.rsplit("/", 1)[-1].strip().lower()


def get_model_ratings(
    model_id: str,
    overrides: Optional[dict[str, ModelRatings]] = None,
) -> Optional[ModelRatings]:
    """Ratings for a model id, or None when no family key matches.

    ``overrides`` entries replace matrix entries with the same key and may add
    new families; the combined key set is searched longest-first.
    """
    bare = bare_model_id(model_id)
    if not bare:
        return None
    table = dict(MODEL_MATRIX)
    if overrides:
        table.update({k.lower(): v for k, v in overrides.items()})
    for key in sorted(table, key=len, reverse=True):
        if bare.startswith(key):
            return dict(table[key])
    return None


def model_supports_task(
    model_id: str,
    task_type: TaskType,
    min_rating: int = 1,
    overrides: Optional[dict[str, ModelRatings]] = None,
) -> bool:
    ratings = get_model_ratings(model_id, overrides)
    if ratings is None:
        return False
    rating = ratings.get(task_type)
    return rating is not None and rating >= min_rating


def load_matrix_overrides(path: Path | str) -> Optional[dict[str, ModelRatings]]:
    """Read ``{"matrixOverrides": {family: {type: rating}}}`` from a JSON file.

    Returns None (and logs) for a missing file, bad JSON, or a payload that
    fails validation. One bad entry rejects the whole file so a typo never
    silently drops a single family.
    """
    p = Path(path).expanduser()
    try:
        payload = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("matrix.overrides_unreadable", path=str(p), error=str(exc))
        return None
    raw = payload.get("matrixOverrides") if isinstance(payload, dict) else None
    if raw is None:
        logger.warning("matrix.overrides_missing_key", path=str(p))
        return None
    try:
        return _OVERRIDES_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        logger.warning("matrix.overrides_invalid", path=str(p), errors=exc.error_count())
        return None
