"""
Event Bus — Subagent Observation Point.

Typed events for everything the orchestrator wants the host to see: a child
started, called a tool, got a tool result, stopped. Events are Pydantic models
emitted onto an asyncio.Queue-backed dispatcher that fans out to
pattern-matched subscribers.

Concurrency model:
  - emit() enqueues without blocking and is safe from sync code
  - A dispatcher task dequeues and fans out to matching handlers
  - Handler exceptions are logged but do not propagate
  - Ordering guarantee: events dispatched in emission order
"""

from __future__ import annotations

import asyncio
import fnmatch
import re
from typing import Any, Callable, Coroutine, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

EventHandler = Callable[["RelayEvent"], Any] | Callable[["RelayEvent"], Coroutine[Any, Any, Any]]

# Splits CamelCase including acronyms: "SubagentToolCall" → ["Subagent", "Tool", "Call"]
_CAMEL_SPLIT_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z]|\d|\b)|[A-Z][a-z]*")


def _derive_event_type(cls_name: str) -> str:
    """``SubagentToolCallEvent`` → ``subagent.tool_call``.

    The first word is the namespace; the rest are joined with underscores.
    """
    parts = [p.lower() for p in _CAMEL_SPLIT_RE.findall(cls_name.removesuffix("Event"))]
    if not parts:
        return cls_name.lower()
    if len(parts) == 1:
        return parts[0]
    return f"{parts[0]}.{'_'.join(parts[1:])}"


class RelayEvent(BaseModel):
    """Base class for all typed events flowing through the bus."""

    event_type: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.event_type:
            self.event_type = _derive_event_type(type(self).__name__)


class _Subscription:
    __slots__ = ("pattern", "handler", "_compiled")

    def __init__(self, pattern: str, handler: EventHandler) -> None:
        self.pattern = pattern
        self.handler = handler
        self._compiled: re.Pattern[str] = re.compile(fnmatch.translate(pattern))

    def matches(self, event_type: str) -> bool:
        return self._compiled.match(event_type) is not None


_SENTINEL = object()


class EventBus:
    """Queue-backed fan-out of subagent events to pattern subscribers.

    Patterns are fnmatch-style: ``"subagent.*"`` sees every subagent event,
    ``"*"`` sees everything. Events emitted before start() wait in the queue.
    """

    def __init__(self, max_queue_size: int = 10000) -> None:
        self._queue: asyncio.Queue[RelayEvent | object] = asyncio.Queue(maxsize=max_queue_size)
        self._subscriptions: list[_Subscription] = []
        self._dispatcher_task: Optional[asyncio.Task[None]] = None

    async def start(self) -> None:
        if self._dispatcher_task is not None:
            return
        self._dispatcher_task = asyncio.create_task(
            self._dispatch_loop(), name="relay-event-dispatcher"
        )
        logger.debug("event_bus.started")

    async def stop(self) -> None:
        """Deliver everything already queued, then stop the dispatcher."""
        task, self._dispatcher_task = self._dispatcher_task, None
        if task is None:
            return
        try:
            self._queue.put_nowait(_SENTINEL)
        except asyncio.QueueFull:
            logger.warning("event_bus.stop_queue_full_cancelling_directly")
            task.cancel()
        try:
            await asyncio.wait_for(task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("event_bus.stop_timeout_cancelling", timeout=5.0)
        except asyncio.CancelledError:
            pass
        logger.debug("event_bus.stopped")

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append(_Subscription(pattern, handler))

    def emit(self, event: RelayEvent) -> None:
        """Enqueue an event for dispatch without blocking.

        If the queue is full the event is dropped with a warning log.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("event_bus.queue_full", event_type=event.event_type, dropped=True)

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _SENTINEL:
                return
            await self._dispatch_event(item)  # type: ignore[arg-type]

    async def _dispatch_event(self, event: RelayEvent) -> None:
        coros = [
            self._invoke_handler(sub, event)
            for sub in list(self._subscriptions)
            if sub.matches(event.event_type)
        ]
        if coros:
            await asyncio.gather(*coros)

    @staticmethod
    async def _invoke_handler(sub: _Subscription, event: RelayEvent) -> None:
        """Invoke a handler with exception isolation."""
        try:
            result = sub.handler(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.error(
                "event_bus.handler_error",
                pattern=sub.pattern,
                event_type=event.event_type,
                exc_info=True,
            )


# ---------------------------------------------------------------------------
# Event Definitions
# ---------------------------------------------------------------------------

class SubagentStartEvent(RelayEvent):
    """Emitted when a child process has been spawned."""

    run_id: str
    agent: str
    task: str
    model: str = ""
    background: bool = False
    pid: Optional[int] = None


class SubagentStopEvent(RelayEvent):
    """Emitted when a child process has exited (or was terminated)."""

    run_id: str
    agent: str
    exit_code: int
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    elapsed_seconds: float = 0.0


class SubagentToolCallEvent(RelayEvent):
    """Emitted for every tool call a child starts."""

    run_id: str
    agent: str
    tool_name: str
    tool_call_id: str = ""
    args: dict[str, Any] = Field(default_factory=dict)


class SubagentToolResultEvent(RelayEvent):
    """Emitted for every tool result a child records."""

    run_id: str
    agent: str
    tool_name: str
    tool_call_id: str = ""
    is_error: bool = False
    denied: bool = False
