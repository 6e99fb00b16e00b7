"""Text helpers for reporting subagent results back to the parent."""

from __future__ import annotations

from typing import Iterable, Sequence

from relay.orchestration.models import Message, SingleResult, UsageStats


def get_final_output(messages: Sequence[Message]) -> str:
    """Text of the last assistant message (its first text part), or ""."""
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    return str(part.get("text") or "")
    return ""


def format_tokens(count: int) -> str:
    if count < 1000:
        return str(count)
    if count < 10_000:
        return f"{count / 1000:.1f}k"
    if count < 1_000_000:
        return f"{round(count / 1000)}k"
    return f"{count / 1_000_000:.1f}M"


def format_usage(usage: UsageStats, model: str | None = None) -> str:
    parts: list[str] = []
    if usage.turns:
        parts.append(f"{usage.turns} turn{'s' if usage.turns != 1 else ''}")
    if usage.input:
        parts.append(f"↑{format_tokens(usage.input)}")
    if usage.output:
        parts.append(f"↓{format_tokens(usage.output)}")
    if usage.cache_read:
        parts.append(f"R{format_tokens(usage.cache_read)}")
    if usage.cost:
        parts.append(f"${usage.cost:.4f}")
    if usage.denials:
        parts.append(f"{usage.denials} denied")
    if model:
        parts.append(model)
    return " ".join(parts)


def describe_failure(result: SingleResult) -> str:
    """One line saying which agent/model failed and why."""
    who = result.agent
    if result.model:
        who += f" on {result.model}"
    if result.stop_reason == "denied":
        tools = ", ".join(result.denied_tools) or "a tool"
        cause = f"denied ({tools})"
    elif result.stop_reason == "routing":
        cause = f"no usable model: {result.error_message}"
    elif result.stop_reason == "restricted":
        cause = result.error_message or "agent type not allowed"
    elif result.stop_reason == "stalled":
        cause = result.error_message or "stalled"
    elif result.stop_reason == "aborted":
        cause = "aborted"
    else:
        detail = result.error_message
        if not detail:
            stderr_lines = result.stderr.strip().splitlines()
            detail = stderr_lines[-1] if stderr_lines else "(no output)"
        cause = f"exit code {result.exit_code}: {detail}"
    return f"{who}: {cause}"


def summarize_parallel(results: Iterable[SingleResult]) -> str:
    results = list(results)
    succeeded = sum(1 for r in results if not r.failed)
    lines = [f"Parallel: {succeeded}/{len(results)} succeeded"]
    for r in results:
        if r.failed:
            lines.append(f"[{r.agent}] failed: {describe_failure(r)}")
        else:
            output = get_final_output(r.messages)
            lines.append(f"[{r.agent}] completed: {output or '(no output)'}")
    return "\n\n".join(lines)
