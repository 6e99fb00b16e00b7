"""
Orchestration Data Models — the contract between parent and subagents.

AgentConfig describes *who* runs. SubagentRequest describes *what* the parent
asked for. InvocationSpec is one fully resolved child run. SingleResult
describes *what happened*. OrchestrationResult aggregates a whole call.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

AgentSource = Literal["user", "project"]
Resolution = Literal["exact", "match", "ephemeral"]
Isolation = Literal["worktree"]
AgentScope = Literal["user", "project", "both"]
OrchestrationMode = Literal["single", "parallel", "centipede"]
BackgroundStatus = Literal["running", "completed", "failed", "stalled"]

# Child messages are the JSON objects the subagent process prints; they are
# kept as plain dicts because the schema belongs to the child, not to us.
Message = dict[str, Any]


class AgentConfig(BaseModel):
    """A named, runnable agent definition."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    tools: Optional[list[str]] = None
    disallowed_tools: Optional[list[str]] = None
    skills: Optional[list[str]] = None
    allowed_agent_types: Optional[list[str]] = None
    mcp_servers: Optional[list[str]] = None
    max_turns: Optional[int] = None
    model: Optional[str] = None
    isolation: Optional[Isolation] = None
    system_prompt: str = ""
    source: AgentSource = "user"
    file_path: str = ""


class AgentDefaults(BaseModel):
    """Directory-level values applied to ephemeral agents only."""

    model_config = ConfigDict(frozen=True)

    tools: Optional[list[str]] = None
    disallowed_tools: Optional[list[str]] = None
    max_turns: Optional[int] = None
    mcp_servers: Optional[list[str]] = None
    isolation: Optional[Isolation] = None
    missing_agent_behavior: Literal["ephemeral", "error"] = "ephemeral"
    fallback_agent: Optional[str] = None


class ResolvedAgent(BaseModel):
    model_config = ConfigDict(frozen=True)

    agent: AgentConfig
    resolution: Resolution
    requested_name: str


def coerce_array(value: Any) -> Any:
    """Accept a JSON-encoded list where a list is expected.

    Parent agents sometimes serialize array arguments as strings; anything
    that does not parse to a list is passed through for normal validation.
    """
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            parsed = json.loads(stripped)
        except ValueError:
            return value
        if isinstance(parsed, list):
            return parsed
    return value


class TaskItem(BaseModel):
    """One unit of work in a parallel batch or a centipede chain."""

    agent: str
    task: str
    cwd: Optional[str] = None
    model: Optional[str] = None


class SubagentRequest(BaseModel):
    """Everything the parent passes in one orchestration call."""

    model_config = ConfigDict(populate_by_name=True)

    agent: Optional[str] = None
    task: Optional[str] = None
    tasks: Optional[list[TaskItem]] = None
    centipede: Optional[list[TaskItem]] = None
    agent_scope: AgentScope = Field("user", alias="agentScope")
    background: bool = False
    model: Optional[str] = None
    cwd: Optional[str] = None
    isolation: Optional[Isolation] = None
    cost_preference: Optional[Literal["eco", "balanced", "premium"]] = Field(
        None, alias="costPreference"
    )
    task_type: Optional[Literal["code", "vision", "text"]] = Field(None, alias="taskType")
    complexity: Optional[int] = None
    session: Optional[str] = None

    @field_validator("tasks", "centipede", mode="before")
    @classmethod
    def _parse_json_arrays(cls, value: Any) -> Any:
        return coerce_array(value)

    @field_validator("isolation", mode="before")
    @classmethod
    def _normalize_isolation(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip().lower()
            return stripped or None
        return value


class UsageStats(BaseModel):
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    cost: float = 0.0
    context_tokens: int = 0
    turns: int = 0
    denials: int = 0


class InvocationSpec(BaseModel):
    """A fully resolved child run, ready for a runner."""

    run_id: str = Field(default_factory=lambda: f"sub-{uuid.uuid4().hex[:12]}")
    agent: AgentConfig
    task: str
    cwd: str
    model: Optional[str] = None
    tools: Optional[list[str]] = None
    session: Optional[str] = None
    background: bool = False


class SingleResult(BaseModel):
    """Outcome of one child run (or of a run that never started)."""

    agent: str
    agent_source: Literal["user", "project", "unknown"] = "unknown"
    requested_name: Optional[str] = None
    resolution: Optional[Resolution] = None
    task: str
    exit_code: int = 0
    messages: list[Message] = Field(default_factory=list)
    stderr: str = ""
    usage: UsageStats = Field(default_factory=UsageStats)
    model: Optional[str] = None
    routing_reason: Optional[str] = None
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    denied_tools: list[str] = Field(default_factory=list)
    step: Optional[int] = None
    isolation: Optional[Isolation] = None
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> bool:
        return self.exit_code != 0 or self.stop_reason in {"error", "aborted", "denied", "stalled"}


class OrchestrationResult(BaseModel):
    mode: OrchestrationMode
    results: list[SingleResult] = Field(default_factory=list)
    text: str = ""
    is_error: bool = False
    background_ids: list[str] = Field(default_factory=list)


class BackgroundSubagent(BaseModel):
    """A detached child run and its retention bookkeeping."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=lambda: f"bg-{uuid.uuid4().hex[:8]}")
    agent: str
    task: str
    handle: Optional[Any] = Field(None, exclude=True)  # asyncio.Task
    result: Optional[SingleResult] = None
    start_time: float = Field(default_factory=time.time)
    end_time: Optional[float] = None
    status: BackgroundStatus = "running"
    history_compacted: bool = False
    history_original_message_count: Optional[int] = None
    history_retained_message_count: Optional[int] = None
    retained_final_output: Optional[str] = None
