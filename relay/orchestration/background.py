"""
Background Lifecycle Manager — detached subagent runs.

A background run is started as an asyncio.Task and returns its id to the
parent immediately. When the task finishes, its result is compacted: only the
last few messages of the child's history are retained, plus the final
assistant message verbatim, so long-running sessions with many background
children do not hold every transcript in memory.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Coroutine, Optional, Sequence

import structlog
from pydantic import BaseModel

from relay.orchestration.formatting import get_final_output
from relay.orchestration.models import BackgroundSubagent, Message, SingleResult

logger = structlog.get_logger(__name__)


class CompactedHistory(BaseModel):
    messages: list[Message]
    original_count: int
    retained_count: int
    final_output: str


def _last_assistant_index(messages: Sequence[Message]) -> Optional[int]:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].get("role") == "assistant":
            return index
    return None


def compact_background_messages(messages: Sequence[Message], tail: int) -> CompactedHistory:
    """Keep the last ``tail`` messages and always the final assistant message.

    When the final assistant message is older than the tail (a trailing tool
    result, say), it is appended after the tail so the output survives.
    """
    tail = max(1, int(tail))
    original = list(messages)
    kept = original[-tail:]
    final_index = _last_assistant_index(original)
    if final_index is not None and final_index < len(original) - tail:
        kept.append(original[final_index])
    return CompactedHistory(
        messages=kept,
        original_count=len(original),
        retained_count=len(kept),
        final_output=get_final_output(original),
    )


def apply_background_result_retention(
    entry: BackgroundSubagent,
    keep_full_history: bool,
    tail: int,
) -> BackgroundSubagent:
    """Record retention bookkeeping on ``entry`` and compact its result."""
    result = entry.result
    if result is None:
        return entry

    compacted = compact_background_messages(result.messages, tail)
    entry.retained_final_output = compacted.final_output
    entry.history_original_message_count = compacted.original_count
    if keep_full_history or compacted.retained_count >= compacted.original_count:
        entry.history_compacted = False
        entry.history_retained_message_count = compacted.original_count
        return entry

    entry.result = result.model_copy(update={"messages": compacted.messages})
    entry.history_compacted = True
    entry.history_retained_message_count = compacted.retained_count
    logger.debug(
        "background.compacted",
        id=entry.id,
        original=compacted.original_count,
        retained=compacted.retained_count,
    )
    return entry


def _status_for(result: SingleResult) -> str:
    if result.stop_reason == "stalled":
        return "stalled"
    if result.failed:
        return "failed"
    return "completed"


class BackgroundLifecycleManager:
    """Tracks detached subagent tasks until the parent acknowledges them."""

    def __init__(
        self,
        config: Any,  # OrchestrationConfig
        event_bus: Any = None,  # EventBus
    ) -> None:
        self._config = config
        self._event_bus = event_bus
        self._entries: dict[str, BackgroundSubagent] = {}

    @property
    def running_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.status == "running")

    def start(
        self,
        agent: str,
        task: str,
        coro: Coroutine[Any, Any, SingleResult],
    ) -> BackgroundSubagent:
        """Schedule ``coro`` and return its tracking entry immediately."""
        entry = BackgroundSubagent(agent=agent, task=task)
        handle = asyncio.create_task(coro, name=f"relay-{entry.id}")
        entry.handle = handle
        self._entries[entry.id] = entry
        handle.add_done_callback(lambda t: self._on_done(entry.id, t))
        logger.info("background.started", id=entry.id, agent=agent)
        return entry

    def _on_done(self, entry_id: str, handle: asyncio.Task) -> None:
        entry = self._entries.get(entry_id)
        if entry is None:
            return
        entry.end_time = time.time()

        if handle.cancelled():
            entry.status = "failed"
            entry.result = SingleResult(
                agent=entry.agent,
                task=entry.task,
                exit_code=1,
                stop_reason="aborted",
                error_message="Background subagent was cancelled",
            )
        elif handle.exception() is not None:
            exc = handle.exception()
            logger.error("background.crashed", id=entry_id, error=str(exc))
            entry.status = "failed"
            entry.result = SingleResult(
                agent=entry.agent,
                task=entry.task,
                exit_code=1,
                stop_reason="error",
                error_message=str(exc),
            )
        else:
            entry.result = handle.result()
            entry.status = _status_for(entry.result)  # type: ignore[assignment]

        apply_background_result_retention(
            entry,
            keep_full_history=self._config.keep_full_history,
            tail=self._config.history_tail_messages,
        )
        logger.info(
            "background.finished",
            id=entry_id,
            status=entry.status,
            elapsed=round(entry.end_time - entry.start_time, 2),
        )

    def get(self, entry_id: str) -> Optional[BackgroundSubagent]:
        return self._entries.get(entry_id)

    def list(self) -> list[BackgroundSubagent]:
        return sorted(self._entries.values(), key=lambda e: e.start_time)

    def acknowledge(self, entry_id: str) -> Optional[BackgroundSubagent]:
        """Hand a finished entry to the parent and forget it.

        Running entries are returned but kept.
        """
        entry = self._entries.get(entry_id)
        if entry is None or entry.status == "running":
            return entry
        return self._entries.pop(entry_id)

    async def wait(self, entry_id: str) -> Optional[BackgroundSubagent]:
        entry = self._entries.get(entry_id)
        if entry is None:
            return None
        if entry.handle is not None and not entry.handle.done():
            try:
                await asyncio.shield(entry.handle)
            except (Exception, asyncio.CancelledError):
                pass
            # Let the done-callback record the result.
            await asyncio.sleep(0)
        return entry

    def cleanup_completed(self, now: Optional[float] = None, max_age: Optional[float] = None) -> int:
        """Drop finished entries older than ``max_age``. Returns the count."""
        now = time.time() if now is None else now
        max_age = self._config.completed_retention_seconds if max_age is None else max_age
        stale = [
            entry_id
            for entry_id, entry in self._entries.items()
            if entry.status != "running"
            and entry.end_time is not None
            and now - entry.end_time > max_age
        ]
        for entry_id in stale:
            del self._entries[entry_id]
        if stale:
            logger.debug("background.cleanup", removed=len(stale))
        return len(stale)

    async def shutdown(self) -> None:
        """Cancel every running entry and wait for the cancellations."""
        handles = [
            e.handle for e in self._entries.values()
            if e.handle is not None and not e.handle.done()
        ]
        if not handles:
            return
        logger.info("background.shutting_down", running=len(handles))
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, return_exceptions=True)
        await asyncio.sleep(0)

    @staticmethod
    def format_status(entry: BackgroundSubagent, now: Optional[float] = None) -> str:
        now = time.time() if now is None else now
        end = entry.end_time if entry.end_time is not None else now
        lines = [
            f"{entry.id} [{entry.status}] {entry.agent} ({end - entry.start_time:.1f}s)",
            f"Task: {entry.task}",
        ]
        if entry.history_original_message_count is not None:
            if entry.history_compacted:
                lines.append(
                    f"History: compacted ({entry.history_retained_message_count}/"
                    f"{entry.history_original_message_count} messages retained)"
                )
            else:
                lines.append(f"History: full ({entry.history_original_message_count} messages)")
        if entry.result is not None and entry.result.error_message and entry.status != "completed":
            lines.append(f"Error: {entry.result.error_message}")
        if entry.retained_final_output:
            lines.append(f"Output: {entry.retained_final_output}")
        return "\n".join(lines)
