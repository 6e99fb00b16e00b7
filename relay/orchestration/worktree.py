"""
Worktree isolation — a private checkout per subagent.

An isolated subagent runs in a detached ``git worktree`` of the caller's
repository at HEAD, so concurrent children editing files never collide with
each other or with the parent. Worktrees live under the system temp dir and
carry a marker file so stray ones are recognizable.
"""

from __future__ import annotations

import asyncio
import json
import re
import shutil
import tempfile
import time
from pathlib import Path

import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

WORKTREE_PREFIX = "relay-wt-"
MARKER_FILENAME = ".relay-worktree.json"
_UNSAFE_CHARS_RE = re.compile(r"[^A-Za-z0-9_.-]+")


class WorktreeError(RuntimeError):
    """Raised when a worktree cannot be created."""


class WorktreeInfo(BaseModel):
    path: str
    repo_root: str
    agent_id: str
    created_at: float


async def _git(*args: str, cwd: str | None = None, timeout: float = 30.0) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return 124, "", f"git {' '.join(args)} timed out"
    return proc.returncode or 0, stdout.decode().strip(), stderr.decode().strip()


async def create_worktree(cwd: str, agent_id: str) -> WorktreeInfo:
    """Create a detached worktree of ``cwd``'s repository at HEAD."""
    try:
        code, root, err = await _git("-C", cwd, "rev-parse", "--show-toplevel")
    except FileNotFoundError as exc:
        raise WorktreeError("git is not installed") from exc
    if code != 0 or not root:
        raise WorktreeError(f"Worktree isolation requires a git repository: {cwd} ({err})")

    safe_id = _UNSAFE_CHARS_RE.sub("-", agent_id).strip("-") or "agent"
    target = Path(tempfile.gettempdir()) / f"{WORKTREE_PREFIX}{safe_id}-{int(time.time() * 1000)}"
    code, _, err = await _git("-C", root, "worktree", "add", "--detach", str(target), "HEAD")
    if code != 0:
        raise WorktreeError(f"git worktree add failed: {err}")

    info = WorktreeInfo(path=str(target), repo_root=root, agent_id=agent_id, created_at=time.time())
    (target / MARKER_FILENAME).write_text(info.model_dump_json(), encoding="utf-8")
    logger.info("worktree.created", path=info.path, repo=root, agent_id=agent_id)
    return info


async def remove_worktree(info: WorktreeInfo) -> None:
    """Remove a worktree; fall back to deleting the directory and pruning."""
    code, _, err = await _git("-C", info.repo_root, "worktree", "remove", "--force", info.path)
    if code == 0:
        logger.info("worktree.removed", path=info.path)
        return

    logger.warning("worktree.remove_failed", path=info.path, error=err)
    shutil.rmtree(info.path, ignore_errors=True)
    await _git("-C", info.repo_root, "worktree", "prune")


def read_marker(path: Path) -> WorktreeInfo | None:
    marker = path / MARKER_FILENAME
    if not marker.is_file():
        return None
    try:
        return WorktreeInfo.model_validate(json.loads(marker.read_text(encoding="utf-8")))
    except (OSError, ValueError):
        return None
