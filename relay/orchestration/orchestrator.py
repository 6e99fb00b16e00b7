"""
Orchestrator — The Central Coordination Engine.

Turns one parent request into child runs. A request is exactly one of:

  - single     one agent, one task (optionally detached into the background)
  - parallel   up to max_parallel_tasks independent tasks, at most
               max_concurrency in flight, results in input order
  - centipede  a sequential chain where each task may reference the previous
               step's output as ``{previous}``; the chain stops at the first
               failure

Every invocation goes through the same pipeline: agent-type restriction,
agent resolution, isolation, model routing, tool filtering, optional worktree,
then the runner. Problems anywhere in the pipeline become a failed
SingleResult rather than an exception, so one bad task never sinks a batch.
"""

from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path
from typing import Any, Callable, Optional

import structlog

from relay.orchestration.agents import (
    AgentDiscovery,
    AgentNotFoundError,
    compute_effective_tools,
    discover_agents,
    resolve_agent,
    resolve_effective_isolation,
)
from relay.orchestration.background import BackgroundLifecycleManager
from relay.orchestration.formatting import describe_failure, get_final_output, summarize_parallel
from relay.orchestration.models import (
    InvocationSpec,
    OrchestrationMode,
    OrchestrationResult,
    SingleResult,
    SubagentRequest,
    TaskItem,
)
from relay.orchestration.runners import SubagentRunnerBase, is_model_level_error
from relay.orchestration.worktree import WorktreeError, WorktreeInfo, create_worktree, remove_worktree
from relay.routing.router import ModelRouter, RoutingHints, RoutingSuccess

logger = structlog.get_logger(__name__)

PREVIOUS_PLACEHOLDER = "{previous}"

AgentLoader = Callable[..., AgentDiscovery]


class InvalidRequestError(ValueError):
    """The parent's request cannot be executed as given."""


def detect_mode(request: SubagentRequest, available_agents: Optional[list[str]] = None) -> OrchestrationMode:
    """Exactly one of centipede, tasks, or agent+task must be present."""
    present: list[OrchestrationMode] = []
    if request.centipede:
        present.append("centipede")
    if request.tasks:
        present.append("parallel")
    if request.agent and request.task:
        present.append("single")
    if len(present) == 1:
        return present[0]

    message = "Invalid parameters. Provide exactly one mode."
    if available_agents is not None:
        message += f"\nAvailable agents: {', '.join(available_agents) or 'none'}"
    raise InvalidRequestError(message)


class Orchestrator:
    """Executes subagent requests for one parent session."""

    def __init__(
        self,
        config: Any,  # OrchestrationConfig
        runner: SubagentRunnerBase,
        router: ModelRouter,
        *,
        agent_loader: AgentLoader = discover_agents,
        background: Optional[BackgroundLifecycleManager] = None,
        event_bus: Any = None,  # EventBus
        parent_model: Optional[str] = None,
        user_home: Optional[Path] = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._router = router
        self._agent_loader = agent_loader
        self._background = background or BackgroundLifecycleManager(config, event_bus)
        self._event_bus = event_bus
        self._parent_model = parent_model
        self._user_home = user_home

    @property
    def background(self) -> BackgroundLifecycleManager:
        return self._background

    def discover(self, cwd: str, scope: str) -> AgentDiscovery:
        return self._agent_loader(cwd, scope, home=self._user_home)

    async def execute(self, request: SubagentRequest) -> OrchestrationResult:
        cwd = request.cwd or os.getcwd()
        discovery = self.discover(cwd, request.agent_scope)
        mode = detect_mode(request, discovery.names())
        self._background.cleanup_completed()

        logger.info("orchestrator.execute", mode=mode, scope=request.agent_scope, cwd=cwd)
        if mode == "single":
            item = TaskItem(agent=request.agent or "", task=request.task or "", cwd=request.cwd, model=request.model)
            if request.background:
                return self._start_background(request, item, discovery, cwd)
            result = await self._run_invocation(request, item, discovery, cwd, session=request.session)
            return self._single_result(result)
        if mode == "parallel":
            return await self._execute_parallel(request, discovery, cwd)
        return await self._execute_centipede(request, discovery, cwd)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def _single_result(self, result: SingleResult) -> OrchestrationResult:
        if result.failed:
            text = f"Single run failed: {describe_failure(result)}"
        else:
            text = get_final_output(result.messages) or "(no output)"
        return OrchestrationResult(mode="single", results=[result], text=text, is_error=result.failed)

    def _start_background(
        self,
        request: SubagentRequest,
        item: TaskItem,
        discovery: AgentDiscovery,
        cwd: str,
    ) -> OrchestrationResult:
        coro = self._run_invocation(request, item, discovery, cwd, session=request.session, background=True)
        entry = self._background.start(item.agent, item.task, coro)
        return OrchestrationResult(
            mode="single",
            text=f"Started background subagent {entry.id} ({item.agent})",
            background_ids=[entry.id],
        )

    async def _execute_parallel(
        self,
        request: SubagentRequest,
        discovery: AgentDiscovery,
        cwd: str,
    ) -> OrchestrationResult:
        items = request.tasks or []
        if len(items) > self._config.max_parallel_tasks:
            raise InvalidRequestError(
                f"Too many parallel tasks ({len(items)}). Max is {self._config.max_parallel_tasks}."
            )

        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def run_one(item: TaskItem) -> SingleResult:
            async with semaphore:
                return await self._run_invocation(request, item, discovery, cwd)

        results = list(await asyncio.gather(*(run_one(item) for item in items)))
        succeeded = sum(1 for r in results if not r.failed)
        logger.info("orchestrator.parallel_complete", total=len(results), succeeded=succeeded)
        return OrchestrationResult(
            mode="parallel",
            results=results,
            text=summarize_parallel(results),
            is_error=succeeded == 0,
        )

    async def _execute_centipede(
        self,
        request: SubagentRequest,
        discovery: AgentDiscovery,
        cwd: str,
    ) -> OrchestrationResult:
        results: list[SingleResult] = []
        previous = ""
        for step, item in enumerate(request.centipede or [], start=1):
            task = item.task.replace(PREVIOUS_PLACEHOLDER, previous)
            result = await self._run_invocation(
                request, item.model_copy(update={"task": task}), discovery, cwd
            )
            result = result.model_copy(update={"step": step})
            results.append(result)
            if result.failed:
                reason = result.error_message or describe_failure(result)
                logger.warning("orchestrator.centipede_stopped", step=step, agent=item.agent)
                return OrchestrationResult(
                    mode="centipede",
                    results=results,
                    text=f"Centipede stopped at step {step} ({item.agent}): {reason}",
                    is_error=True,
                )
            previous = get_final_output(result.messages)

        return OrchestrationResult(
            mode="centipede",
            results=results,
            text=previous or "(no output)",
        )

    # ------------------------------------------------------------------
    # Per-invocation pipeline
    # ------------------------------------------------------------------

    def _failed(self, item: TaskItem, stop_reason: str, message: str, **extra: Any) -> SingleResult:
        return SingleResult(
            agent=item.agent,
            requested_name=item.agent,
            task=item.task,
            exit_code=1,
            stop_reason=stop_reason,
            error_message=message,
            **extra,
        )

    async def _run_invocation(
        self,
        request: SubagentRequest,
        item: TaskItem,
        discovery: AgentDiscovery,
        cwd: str,
        *,
        session: Optional[str] = None,
        background: bool = False,
    ) -> SingleResult:
        allowed = self._config.allowed_agent_types
        if allowed and item.agent not in allowed:
            logger.warning("orchestrator.restricted", agent=item.agent, allowed=allowed)
            return self._failed(
                item,
                "restricted",
                f"Agent type restriction: cannot spawn {item.agent}. Allowed: {', '.join(allowed)}",
            )

        try:
            resolved = resolve_agent(item.agent, discovery.agents, discovery.defaults)
        except AgentNotFoundError as exc:
            return self._failed(item, "error", str(exc))
        agent = resolved.agent
        isolation = resolve_effective_isolation(request.isolation, agent.isolation, discovery.defaults.isolation)
        task_cwd = item.cwd or cwd

        routing = await self._router.route(
            item.task,
            model_override=item.model or request.model,
            agent_model=agent.model,
            parent_model=self._parent_model,
            agent_role=agent.description,
            hints=RoutingHints(
                cost_preference=request.cost_preference,
                task_type=request.task_type,
                complexity=request.complexity,
            ),
            cwd=task_cwd,
        )
        if not isinstance(routing, RoutingSuccess):
            return self._failed(
                item,
                "routing",
                routing.error,
                agent_source=agent.source,
                resolution=resolved.resolution,
            )

        tools = compute_effective_tools(agent.tools, agent.disallowed_tools)
        spec = InvocationSpec(
            agent=agent,
            task=item.task,
            cwd=task_cwd,
            model=routing.model.display_name,
            tools=tools,
            session=session,
            background=background,
        )

        worktree: Optional[WorktreeInfo] = None
        if isolation == "worktree":
            try:
                worktree = await create_worktree(task_cwd, spec.run_id)
            except WorktreeError as exc:
                return self._failed(
                    item,
                    "error",
                    str(exc),
                    agent_source=agent.source,
                    resolution=resolved.resolution,
                    isolation=isolation,
                )
            spec = spec.model_copy(update={"cwd": worktree.path})

        logger.info(
            "orchestrator.spawn",
            run_id=spec.run_id,
            agent=agent.name,
            resolution=resolved.resolution,
            model=spec.model,
            routing=routing.reason,
            isolation=isolation,
        )
        start = time.monotonic()
        try:
            result = await self._runner.run(spec)
            for fallback in routing.fallbacks:
                if not is_model_level_error(result):
                    break
                logger.warning(
                    "orchestrator.model_retry",
                    run_id=spec.run_id,
                    failed_model=spec.model,
                    next_model=fallback.display_name,
                )
                spec = spec.model_copy(update={"model": fallback.display_name})
                result = await self._runner.run(spec)
        finally:
            if worktree is not None:
                try:
                    await remove_worktree(worktree)
                except Exception as exc:
                    logger.warning("orchestrator.worktree_cleanup_failed", path=worktree.path, error=str(exc))

        return result.model_copy(
            update={
                "requested_name": resolved.requested_name,
                "resolution": resolved.resolution,
                "routing_reason": routing.reason,
                "model": result.model or spec.model,
                "isolation": isolation,
                "elapsed_seconds": round(time.monotonic() - start, 2),
            }
        )

    async def shutdown(self) -> None:
        await self._background.shutdown()
