"""
Task Classifier — a cheap probe that sizes a task before routing it.

The classifier asks the cheapest model in the registry snapshot to label a
task with a type (code / vision / text) and a complexity (1–5). It is an
optimization, never a gate. A missing model, a provider error, a timeout or
an answer that does not parse all yield the same deterministic fallback, so
routing always proceeds.
"""

from __future__ import annotations

import asyncio
import json
import re
from typing import Optional, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from relay.routing.matrix import TaskType
from relay.routing.registry import ModelInfo, ModelRegistry, all_models

logger = structlog.get_logger(__name__)

FALLBACK_COMPLEXITY = 3
FALLBACK_REASONING = "fallback"

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_BRACE_SPAN_RE = re.compile(r"\{.*?\}", re.DOTALL)

CLASSIFIER_PROMPT = """\
Classify the following task for routing to an AI model.

Task types:
- code: writing, editing, refactoring, debugging or reviewing source code
- vision: anything that requires looking at images, screenshots or diagrams
- text: prose, research, summarisation, planning, analysis without code edits

Complexity (the minimum capability a model needs):
1 = trivial: a one-line change, a rename, a lookup
2 = simple: a small self-contained edit or short answer
3 = moderate: multi-step work within one module or topic
4 = complex: cross-cutting changes, subtle bugs, careful reasoning
5 = expert: architecture, novel algorithms, high-stakes correctness

The agent's default task type is "{primary_type}".{role_line}

Task:
{task}

Respond with compact JSON only:
{{"type": "code|vision|text", "complexity": 1-5, "reasoning": "<one short sentence>"}}
"""


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: TaskType
    complexity: StrictInt = Field(ge=1, le=5)
    reasoning: str = ""


def fallback_classification(primary_type: TaskType) -> ClassificationResult:
    return ClassificationResult(
        type=primary_type,
        complexity=FALLBACK_COMPLEXITY,
        reasoning=FALLBACK_REASONING,
    )


class Completer(Protocol):
    """Sends one prompt to one model and returns the text of the reply."""

    async def complete(self, model: ModelInfo, prompt: str, *, max_tokens: int = 256) -> str: ...


def build_classifier_prompt(
    task: str,
    primary_type: TaskType,
    agent_role: Optional[str] = None,
) -> str:
    role_line = f"\nThe agent's role: {agent_role.strip()}" if agent_role and agent_role.strip() else ""
    return CLASSIFIER_PROMPT.format(primary_type=primary_type, role_line=role_line, task=task)


def parse_classification(text: str) -> Optional[ClassificationResult]:
    """Extract and validate a classification from a model reply.

    A fenced block is preferred; otherwise the first ``{...}`` span.
    """
    if not text:
        return None
    candidates: list[str] = []
    fenced = _FENCED_JSON_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())
    span = _BRACE_SPAN_RE.search(text)
    if span:
        candidates.append(span.group(0))

    for raw in candidates:
        try:
            data = json.loads(raw)
        except ValueError:
            continue
        if not isinstance(data, dict):
            continue
        try:
            return ClassificationResult(
                type=data.get("type"),
                complexity=data.get("complexity"),
                reasoning=str(data.get("reasoning") or ""),
            )
        except ValidationError:
            continue
    return None


class TaskClassifier:
    """Classifies tasks against one registry snapshot.

    The cheapest-model lookup is memoized on the instance, so a router built
    per orchestration call never leaks a stale choice into the next one.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        completer: Optional[Completer],
        timeout: float = 10.0,
    ) -> None:
        self._registry = registry
        self._completer = completer
        self._timeout = timeout
        self._cheapest: Optional[ModelInfo] = None
        self._cheapest_resolved = False

    def cheapest_model(self) -> Optional[ModelInfo]:
        if not self._cheapest_resolved:
            models = all_models(self._registry)
            self._cheapest = min(models, key=lambda m: m.mean_cost) if models else None
            self._cheapest_resolved = True
        return self._cheapest

    async def classify(
        self,
        task: str,
        primary_type: TaskType = "code",
        agent_role: Optional[str] = None,
    ) -> ClassificationResult:
        fallback = fallback_classification(primary_type)
        model = self.cheapest_model()
        if model is None or self._completer is None:
            logger.debug("classifier.unavailable", has_model=model is not None)
            return fallback

        prompt = build_classifier_prompt(task, primary_type, agent_role)
        try:
            reply = await asyncio.wait_for(
                self._completer.complete(model, prompt, max_tokens=256),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("classifier.timeout", model=model.display_name, timeout=self._timeout)
            return fallback
        except Exception as exc:
            logger.warning("classifier.probe_failed", model=model.display_name, error=str(exc))
            return fallback

        result = parse_classification(reply)
        if result is None:
            logger.warning("classifier.unparsable", model=model.display_name, output=reply)
            return fallback

        logger.debug(
            "classifier.classified",
            model=model.display_name,
            type=result.type,
            complexity=result.complexity,
        )
        return result
