"""
Supervisor — the only code that touches raw child processes.

Runners ask the Supervisor to spawn a child, signal it, wait for it, or
terminate it (SIGTERM, then SIGKILL after a grace period). Every live child
is tracked so shutdown() can reap whatever is still running, and each PID is
reported to an optional process registry. Registry failures are logged and
otherwise ignored; PID bookkeeping must never abort orchestration.
"""

from __future__ import annotations

import asyncio
import os
import signal
import time
from typing import Mapping, Optional, Protocol, Sequence

import structlog

logger = structlog.get_logger(__name__)

# Single JSON events (full tool results) can be large.
_STREAM_LIMIT = 16 * 1024 * 1024


class ProcessRegistry(Protocol):
    """Session-scoped PID tracking owned by the host."""

    def register(self, pid: int, command: str) -> None: ...

    def unregister(self, pid: int) -> None: ...


class NullProcessRegistry:
    def register(self, pid: int, command: str) -> None:
        return None

    def unregister(self, pid: int) -> None:
        return None


class ProcessHandle:
    """A spawned child and its pipes."""

    __slots__ = ("process", "command", "started_at")

    def __init__(self, process: asyncio.subprocess.Process, command: str) -> None:
        self.process = process
        self.command = command
        self.started_at = time.monotonic()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self.process.stdout  # type: ignore[return-value]

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self.process.stderr  # type: ignore[return-value]


class Supervisor:
    """Owns child process handles for one orchestrator."""

    def __init__(
        self,
        registry: Optional[ProcessRegistry] = None,
        kill_grace: float = 5.0,
    ) -> None:
        self._registry = registry or NullProcessRegistry()
        self._kill_grace = kill_grace
        self._handles: dict[int, ProcessHandle] = {}

    @property
    def active_count(self) -> int:
        return len(self._handles)

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        cwd: str,
        env: Optional[Mapping[str, str]] = None,
    ) -> ProcessHandle:
        """Start a child with piped stdout/stderr and no stdin."""
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
        handle = ProcessHandle(process, argv[0])
        self._handles[handle.pid] = handle
        try:
            self._registry.register(handle.pid, handle.command)
        except Exception as exc:
            logger.warning("supervisor.registry_register_failed", pid=handle.pid, error=str(exc))
        logger.debug("supervisor.spawned", pid=handle.pid, command=handle.command, cwd=cwd)
        return handle

    def signal(self, handle: ProcessHandle, sig: int) -> bool:
        """Send ``sig`` if the child is still running. Returns True if sent."""
        if handle.returncode is not None:
            return False
        try:
            handle.process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    async def wait(self, handle: ProcessHandle) -> int:
        returncode = await handle.process.wait()
        self._release(handle)
        return returncode

    async def terminate(self, handle: ProcessHandle, grace: Optional[float] = None) -> int:
        """SIGTERM, then SIGKILL if the child outlives the grace period."""
        grace = self._kill_grace if grace is None else grace
        if self.signal(handle, signal.SIGTERM):
            logger.info("supervisor.terminate", pid=handle.pid, grace=grace)
        try:
            return await asyncio.wait_for(self.wait(handle), timeout=grace)
        except asyncio.TimeoutError:
            kill_sig = getattr(signal, "SIGKILL", signal.SIGTERM)
            if self.signal(handle, kill_sig):
                logger.warning("supervisor.kill", pid=handle.pid)
            return await self.wait(handle)

    async def shutdown(self) -> None:
        """Terminate every child still tracked."""
        handles = list(self._handles.values())
        if not handles:
            return
        logger.info("supervisor.shutting_down", active=len(handles))
        await asyncio.gather(*(self.terminate(h) for h in handles), return_exceptions=True)

    def _release(self, handle: ProcessHandle) -> None:
        if self._handles.pop(handle.pid, None) is None:
            return
        try:
            self._registry.unregister(handle.pid)
        except Exception as exc:
            logger.warning("supervisor.registry_unregister_failed", pid=handle.pid, error=str(exc))


def child_environment(extra: Mapping[str, str]) -> dict[str, str]:
    """The parent's environment plus ``extra``."""
    env = dict(os.environ)
    env.update(extra)
    return env
