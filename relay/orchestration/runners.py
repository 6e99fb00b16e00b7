"""
Subagent Runners — The Execution Backends.

A runner takes one fully resolved InvocationSpec, runs it to completion and
returns a SingleResult. ProcessSubagentRunner launches the agent CLI in JSON
mode through the Supervisor and folds its line-delimited event stream into
messages, usage, stop reason and denied tools.

Runners never raise for child failures: a crash, a non-zero exit, a stall
or a denied tool all come back as a SingleResult. Cancellation is the one
exception; the child is terminated and CancelledError propagates.
"""

from __future__ import annotations

import asyncio
import json
import math
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import structlog

from relay.events import (
    SubagentStartEvent,
    SubagentStopEvent,
    SubagentToolCallEvent,
    SubagentToolResultEvent,
)
from relay.orchestration.models import AgentConfig, InvocationSpec, Message, SingleResult, UsageStats
from relay.orchestration.supervisor import ProcessHandle, Supervisor, child_environment

logger = structlog.get_logger(__name__)

DENIAL_PATTERNS = (
    "permission denied",
    "tool denied",
    "user declined",
    "denied by user",
    "user rejected",
    "request denied",
)

# Failures that another model might not hit.
MODEL_ERROR_PATTERNS = (
    "usage limit",
    "rate limit",
    "quota exceeded",
    "authentication",
    "unauthorized",
    "api key",
    "billing",
    "capacity",
    "overloaded",
    "503",
    "429",
)

MAX_TURNS_HINT = (
    "You have a maximum of {max_turns} tool-use turns for this task. "
    "Plan your approach to complete within this budget. "
    "If you are running low, output your best result immediately."
)

STALL_MESSAGE = (
    "Subagent stalled during {phase}: no output for {seconds:.0f}s "
    "(interactive confirmation path unavailable in subagent JSON mode)"
)

_STDERR_LIMIT = 64 * 1024


def _number(value: Any) -> float:
    """Numeric usage field, or 0 for anything missing or malformed."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _joined_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    return "\n".join(
        str(part.get("text") or "")
        for part in content
        if isinstance(part, dict) and part.get("type") == "text"
    )


def is_tool_denial(entry: Message) -> bool:
    """True when a tool result was vetoed rather than merely failing.

    Only error results qualify. An explicit ``isDenied`` flag wins; otherwise
    the result text is matched against known denial phrases.
    """
    if not entry.get("isError"):
        return False
    if entry.get("isDenied") is True:
        return True
    text = _joined_text(entry.get("content")).lower()
    return any(pattern in text for pattern in DENIAL_PATTERNS)


def find_denied_tools(messages: Sequence[Message]) -> list[str]:
    """Tool names of every denied result in a completed history."""
    return [
        str(m.get("toolName") or "unknown")
        for m in messages
        if m.get("role") == "toolResult" and is_tool_denial(m)
    ]


def is_model_level_error(result: SingleResult) -> bool:
    """Non-zero exit caused by the model/provider rather than the task."""
    if result.exit_code == 0 or result.stop_reason == "denied":
        return False
    text = f"{result.error_message or ''}\n{result.stderr}".lower()
    return any(pattern in text for pattern in MODEL_ERROR_PATTERNS)


def build_system_prompt(agent: AgentConfig) -> str:
    prompt = agent.system_prompt
    if agent.max_turns:
        prompt = MAX_TURNS_HINT.format(max_turns=agent.max_turns) + "\n\n" + prompt
    return prompt


class SubagentRunnerBase(ABC):
    """Abstract base for subagent execution backends."""

    @abstractmethod
    async def run(self, spec: InvocationSpec) -> SingleResult:
        """Execute one invocation and return its result."""


class _StreamState:
    """Accumulates one child's JSON event stream."""

    def __init__(self, spec: InvocationSpec, event_bus: Any = None) -> None:
        self._spec = spec
        self.run_id = spec.run_id
        self._event_bus = event_bus
        self.messages: list[Message] = []
        self.usage = UsageStats()
        self.model: Optional[str] = spec.model
        self.stop_reason: Optional[str] = None
        self.error_message: Optional[str] = None
        self.denied_tools: list[str] = []
        self.tool_calls = 0

    @property
    def denied(self) -> bool:
        return bool(self.denied_tools)

    def handle_line(self, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return
        try:
            event = json.loads(text)
        except ValueError:
            return
        if not isinstance(event, dict):
            return

        event_type = event.get("type")
        message = event.get("message")
        if event_type == "tool_call_start":
            self.tool_calls += 1
            self.emit(SubagentToolCallEvent(
                run_id=self._spec.run_id,
                agent=self._spec.agent.name,
                tool_name=str(event.get("toolName") or "unknown"),
                tool_call_id=str(event.get("toolCallId") or ""),
                args=event.get("input") if isinstance(event.get("input"), dict) else {},
            ))
        elif event_type == "message_end" and isinstance(message, dict):
            self.messages.append(message)
            if message.get("role") == "assistant":
                self._record_assistant(message)
        elif event_type == "tool_result_end" and isinstance(message, dict):
            self.messages.append(message)
            self._record_tool_result(message)

    def _record_assistant(self, message: Message) -> None:
        self.usage.turns += 1
        usage = message.get("usage")
        if isinstance(usage, dict):
            self.usage.input += int(_number(usage.get("input")))
            self.usage.output += int(_number(usage.get("output")))
            self.usage.cache_read += int(_number(usage.get("cacheRead")))
            self.usage.cache_write += int(_number(usage.get("cacheWrite")))
            cost = usage.get("cost")
            if isinstance(cost, dict):
                self.usage.cost += _number(cost.get("total"))
            self.usage.context_tokens = int(_number(usage.get("totalTokens")))
        if message.get("model"):
            self.model = str(message["model"])
        if message.get("stopReason") and self.stop_reason != "denied":
            self.stop_reason = str(message["stopReason"])
        if message.get("errorMessage"):
            self.error_message = str(message["errorMessage"])

    def _record_tool_result(self, message: Message) -> None:
        denied = is_tool_denial(message)
        tool_name = str(message.get("toolName") or "unknown")
        if denied:
            self.denied_tools.append(tool_name)
            self.usage.denials += 1
            self.stop_reason = "denied"
            self.error_message = f"Tool call denied: {tool_name}"
            logger.warning("runner.tool_denied", run_id=self._spec.run_id, tool=tool_name)

        self.emit(SubagentToolResultEvent(
            run_id=self._spec.run_id,
            agent=self._spec.agent.name,
            tool_name=tool_name,
            tool_call_id=str(message.get("toolCallId") or ""),
            is_error=bool(message.get("isError")),
            denied=denied,
        ))

    def mark_stalled(self, phase: str, seconds: float) -> None:
        self.stop_reason = "stalled"
        self.error_message = STALL_MESSAGE.format(phase=phase, seconds=seconds)

    def emit(self, event: Any) -> None:
        if self._event_bus is None:
            return
        try:
            self._event_bus.emit(event)
        except Exception:
            logger.debug("runner.emit_event_failed", exc_info=True)

    def to_result(self, exit_code: int, stderr: str, elapsed: float) -> SingleResult:
        return SingleResult(
            agent=self._spec.agent.name,
            agent_source=self._spec.agent.source,
            task=self._spec.task,
            exit_code=exit_code,
            messages=self.messages,
            stderr=stderr,
            usage=self.usage,
            model=self.model,
            stop_reason=self.stop_reason,
            error_message=self.error_message,
            denied_tools=self.denied_tools,
            elapsed_seconds=round(elapsed, 2),
        )


async def _drain_stderr(reader: asyncio.StreamReader) -> str:
    """Read stderr to EOF, keeping only the last chunk of output."""
    buf = bytearray()
    while True:
        chunk = await reader.read(8192)
        if not chunk:
            break
        buf.extend(chunk)
        if len(buf) > _STDERR_LIMIT:
            del buf[: len(buf) - _STDERR_LIMIT]
    return buf.decode("utf-8", errors="replace")


class ProcessSubagentRunner(SubagentRunnerBase):
    """Run a subagent as a child agent-CLI process speaking JSON lines."""

    def __init__(
        self,
        config: Any,  # OrchestrationConfig
        supervisor: Optional[Supervisor] = None,
        event_bus: Any = None,  # EventBus
    ) -> None:
        self._config = config
        self._supervisor = supervisor or Supervisor(kill_grace=config.kill_grace_seconds)
        self._event_bus = event_bus

    @property
    def supervisor(self) -> Supervisor:
        return self._supervisor

    def build_argv(self, spec: InvocationSpec, prompt_path: Optional[str]) -> list[str]:
        argv = [self._config.subagent_command, "--mode", "json", "-p"]
        argv += ["--session", spec.session] if spec.session else ["--no-session"]
        if spec.model:
            argv += ["--models", spec.model]
        if spec.tools is not None:
            argv += ["--tools", ",".join(spec.tools)]
        for skill in spec.agent.skills or []:
            argv += ["--skill", skill]
        if prompt_path:
            argv += ["--append-system-prompt", prompt_path]
        argv.append(f"Task: {spec.task}")
        return argv

    def build_env(self, spec: InvocationSpec) -> dict[str, str]:
        extra = {"RELAY_IS_SUBAGENT": "1"}
        if spec.agent.allowed_agent_types is not None:
            extra["RELAY_ALLOWED_AGENT_TYPES"] = ",".join(spec.agent.allowed_agent_types)
        if spec.agent.mcp_servers:
            extra["RELAY_MCP_SERVERS"] = ",".join(spec.agent.mcp_servers)
        return child_environment(extra)

    @staticmethod
    def _write_system_prompt(spec: InvocationSpec) -> tuple[Optional[str], Optional[str]]:
        prompt = build_system_prompt(spec.agent)
        if not prompt.strip():
            return None, None
        tmp_dir = tempfile.mkdtemp(prefix="relay-subagent-")
        safe_name = "".join(c if c.isalnum() or c in "-_" else "_" for c in spec.agent.name)
        path = os.path.join(tmp_dir, f"prompt-{safe_name}.md")
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(prompt)
        return tmp_dir, path

    async def _pump_stdout(self, handle: ProcessHandle, state: _StreamState) -> None:
        """Consume stdout until EOF, a stall, or a denial."""
        saw_output = False
        while True:
            timeout = self._config.inactivity_timeout if saw_output else self._config.startup_timeout
            try:
                line = await asyncio.wait_for(handle.stdout.readline(), timeout=timeout)
            except asyncio.TimeoutError:
                phase = "inactivity" if saw_output else "startup"
                state.mark_stalled(phase, timeout)
                logger.warning(
                    "runner.stalled",
                    run_id=state.run_id,
                    phase=phase,
                    timeout=timeout,
                )
                await self._supervisor.terminate(handle)
                return
            if not line:
                return
            saw_output = True
            state.handle_line(line)
            if state.denied:
                await self._supervisor.terminate(handle)
                return

    async def run(self, spec: InvocationSpec) -> SingleResult:
        start = time.monotonic()
        state = _StreamState(spec, self._event_bus)
        prompt_dir: Optional[str] = None
        try:
            prompt_dir, prompt_path = self._write_system_prompt(spec)
            argv = self.build_argv(spec, prompt_path)
            try:
                handle = await self._supervisor.spawn(argv, cwd=spec.cwd, env=self.build_env(spec))
            except OSError as exc:
                logger.error("runner.spawn_failed", run_id=spec.run_id, command=argv[0], error=str(exc))
                state.error_message = f"Failed to start {argv[0]}: {exc}"
                return state.to_result(1, "", time.monotonic() - start)

            logger.info(
                "runner.start",
                run_id=spec.run_id,
                agent=spec.agent.name,
                model=spec.model,
                pid=handle.pid,
                cwd=spec.cwd,
            )
            state.emit(SubagentStartEvent(
                run_id=spec.run_id,
                agent=spec.agent.name,
                task=spec.task,
                model=spec.model or "",
                background=spec.background,
                pid=handle.pid,
            ))

            stderr_task = asyncio.create_task(_drain_stderr(handle.stderr))
            try:
                await self._pump_stdout(handle, state)
                exit_code = await self._supervisor.wait(handle)
                stderr = await stderr_task
            except asyncio.CancelledError:
                logger.warning("runner.cancelled", run_id=spec.run_id)
                stderr_task.cancel()
                await self._supervisor.terminate(handle)
                state.emit(SubagentStopEvent(
                    run_id=spec.run_id,
                    agent=spec.agent.name,
                    exit_code=handle.returncode if handle.returncode is not None else -1,
                    stop_reason="aborted",
                    elapsed_seconds=round(time.monotonic() - start, 2),
                ))
                raise
            except Exception as exc:
                logger.error("runner.stream_failed", run_id=spec.run_id, error=str(exc), exc_info=True)
                stderr_task.cancel()
                exit_code = await self._supervisor.terminate(handle)
                state.stop_reason = "error"
                state.error_message = f"Lost track of subagent output: {exc}"
                result = state.to_result(exit_code or 1, "", time.monotonic() - start)
                state.emit(SubagentStopEvent(
                    run_id=spec.run_id,
                    agent=spec.agent.name,
                    exit_code=result.exit_code,
                    stop_reason="error",
                    error_message=result.error_message,
                    elapsed_seconds=result.elapsed_seconds,
                ))
                return result

            result = state.to_result(exit_code, stderr, time.monotonic() - start)
            state.emit(SubagentStopEvent(
                run_id=spec.run_id,
                agent=spec.agent.name,
                exit_code=exit_code,
                stop_reason=result.stop_reason,
                error_message=result.error_message,
                elapsed_seconds=result.elapsed_seconds,
            ))
            logger.info(
                "runner.complete",
                run_id=spec.run_id,
                exit_code=exit_code,
                stop_reason=result.stop_reason,
                turns=result.usage.turns,
                elapsed=result.elapsed_seconds,
            )
            return result

        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("runner.error", run_id=spec.run_id, error=str(exc), exc_info=True)
            state.error_message = str(exc)
            return state.to_result(1, "", time.monotonic() - start)
        finally:
            if prompt_dir:
                shutil.rmtree(prompt_dir, ignore_errors=True)
