"""
Shared fixtures for the Relay test suite.

Provides a deterministic model registry, scripted completers and runners,
and an agent-directory builder so individual test modules can focus on
behavior rather than setup.
"""

from __future__ import annotations

import asyncio
import textwrap
from pathlib import Path
from typing import Callable, Optional

import pytest

from relay.orchestration.models import InvocationSpec, SingleResult
from relay.orchestration.runners import SubagentRunnerBase
from relay.routing.registry import ModelInfo, StaticModelRegistry, default_registry


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------

_RELAY_ENV_VARS = (
    "RELAY_MAX_PARALLEL_TASKS",
    "RELAY_MAX_CONCURRENCY",
    "RELAY_SUBAGENT_COMMAND",
    "RELAY_ALLOWED_AGENT_TYPES",
    "RELAY_IS_SUBAGENT",
    "RELAY_SUBAGENT_KEEP_FULL_HISTORY",
    "RELAY_SUBAGENT_HISTORY_TAIL_MESSAGES",
    "RELAY_HOME",
)


@pytest.fixture(autouse=True)
def _isolate_relay_env(monkeypatch):
    """Keep the developer's own RELAY_* settings out of every test."""
    for var in _RELAY_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

ALL_KEYS = {
    "ANTHROPIC_API_KEY": "test-anthropic",
    "OPENAI_API_KEY": "test-openai",
    "GEMINI_API_KEY": "test-gemini",
    "XAI_API_KEY": "test-xai",
    "ZAI_API_KEY": "test-zai",
    "OPENCODE_API_KEY": "test-opencode",
    "MISTRAL_API_KEY": "test-mistral",
    "MINIMAX_API_KEY": "test-minimax",
    "MOONSHOT_API_KEY": "test-moonshot",
    "DASHSCOPE_API_KEY": "test-dashscope",
}


@pytest.fixture()
def registry() -> StaticModelRegistry:
    """The builtin catalog with a key for every provider."""
    return default_registry(env=ALL_KEYS)


@pytest.fixture()
def keyless_registry() -> StaticModelRegistry:
    return default_registry(env={})


def make_registry(models: list[ModelInfo], keys: Optional[dict[str, str]] = None) -> StaticModelRegistry:
    return StaticModelRegistry(models, env=keys if keys is not None else ALL_KEYS)


# ---------------------------------------------------------------------------
# Completer
# ---------------------------------------------------------------------------

class MockCompleter:
    """Returns a canned reply (or raises) and records every prompt."""

    def __init__(self, reply: str = "", delay: float = 0.0, error: Optional[Exception] = None):
        self.reply = reply
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str]] = []

    async def complete(self, model: ModelInfo, prompt: str, *, max_tokens: int = 256) -> str:
        self.calls.append((model.display_name, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def assistant_message(text: str, **extra) -> dict:
    return {"role": "assistant", "content": [{"type": "text", "text": text}], **extra}


class MockRunner(SubagentRunnerBase):
    """Records specs and answers with ``respond(spec)`` or an echo."""

    def __init__(
        self,
        respond: Optional[Callable[[InvocationSpec], SingleResult]] = None,
        delay: float = 0.0,
    ):
        self._respond = respond
        self._delay = delay
        self.specs: list[InvocationSpec] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, spec: InvocationSpec) -> SingleResult:
        self.specs.append(spec)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if self._respond is not None:
                return self._respond(spec)
            return SingleResult(
                agent=spec.agent.name,
                agent_source=spec.agent.source,
                task=spec.task,
                messages=[assistant_message(f"done: {spec.task}")],
                model=spec.model,
            )
        finally:
            self.in_flight -= 1


class MockConfig:
    """Minimal OrchestrationConfig stand-in for tests."""

    max_parallel_tasks = 8
    max_concurrency = 4
    subagent_command = "pi"
    kill_grace_seconds = 1.0
    startup_timeout = 5.0
    inactivity_timeout = 5.0
    classifier_timeout = 1.0
    history_tail_messages = 6
    keep_full_history = False
    completed_retention_seconds = 1800.0
    allowed_agent_types: list[str] = []
    is_subagent = False


@pytest.fixture()
def config() -> MockConfig:
    return MockConfig()


# ---------------------------------------------------------------------------
# Agent files
# ---------------------------------------------------------------------------

class AgentDirBuilder:
    """Writes agent markdown files under a fake home or project."""

    def __init__(self, root: Path):
        self.root = root

    def user_dir(self) -> Path:
        d = self.root / "home" / ".claude" / "agents"
        d.mkdir(parents=True, exist_ok=True)
        return d

    def project_dir(self) -> Path:
        d = self.root / "project" / ".claude" / "agents"
        d.mkdir(parents=True, exist_ok=True)
        return d

    @property
    def home(self) -> Path:
        return self.root / "home"

    @property
    def project(self) -> Path:
        p = self.root / "project"
        p.mkdir(parents=True, exist_ok=True)
        return p

    def write(self, directory: Path, filename: str, frontmatter: str, body: str = "You are helpful.") -> Path:
        path = directory / filename
        path.write_text(f"---\n{textwrap.dedent(frontmatter).strip()}\n---\n{body}\n", encoding="utf-8")
        return path


@pytest.fixture()
def agent_dirs(tmp_path) -> AgentDirBuilder:
    return AgentDirBuilder(tmp_path)
