"""
Subagent Orchestration — delegating work to child agent processes.

A parent agent hands the Orchestrator a request naming one agent, a parallel
batch, or a sequential chain. Each child runs as its own agent-CLI process
in JSON mode, on a model picked by the router, optionally inside a private
git worktree. Children can be detached into the background and collected
later.
"""

from __future__ import annotations

from relay.orchestration.models import (
    AgentConfig,
    OrchestrationResult,
    SingleResult,
    SubagentRequest,
    TaskItem,
)
from relay.orchestration.orchestrator import InvalidRequestError, Orchestrator, detect_mode
from relay.orchestration.runners import ProcessSubagentRunner, SubagentRunnerBase

__all__ = [
    "AgentConfig",
    "OrchestrationResult",
    "SingleResult",
    "SubagentRequest",
    "TaskItem",
    "InvalidRequestError",
    "Orchestrator",
    "detect_mode",
    "ProcessSubagentRunner",
    "SubagentRunnerBase",
]
