"""Tests for relay.orchestration.worktree — per-subagent git checkouts."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from relay.orchestration.worktree import (
    MARKER_FILENAME,
    WORKTREE_PREFIX,
    WorktreeError,
    WorktreeInfo,
    create_worktree,
    read_marker,
    remove_worktree,
)

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture()
def repo(tmp_path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()

    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=root, check=True, capture_output=True)

    git("init", "-q")
    git("config", "user.email", "dev@example.com")
    git("config", "user.name", "Dev")
    (root / "README.md").write_text("hello\n")
    git("add", "README.md")
    git("commit", "-q", "-m", "init")
    return root


@requires_git
class TestWorktree:
    @pytest.mark.asyncio
    async def test_create_and_remove(self, repo) -> None:
        info = await create_worktree(str(repo), "sub/abc 123")
        path = Path(info.path)
        try:
            assert path.name.startswith(f"{WORKTREE_PREFIX}sub-abc-123-")
            assert (path / "README.md").read_text() == "hello\n"
            assert Path(info.repo_root).resolve() == repo.resolve()

            marker = read_marker(path)
            assert marker == info
        finally:
            await remove_worktree(info)
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_from_subdirectory(self, repo) -> None:
        sub = repo / "pkg"
        sub.mkdir()
        info = await create_worktree(str(sub), "agent")
        try:
            assert Path(info.repo_root).resolve() == repo.resolve()
        finally:
            await remove_worktree(info)

    @pytest.mark.asyncio
    async def test_outside_repository(self, tmp_path) -> None:
        plain = tmp_path / "plain"
        plain.mkdir()
        with pytest.raises(WorktreeError, match="requires a git repository"):
            await create_worktree(str(plain), "agent")

    @pytest.mark.asyncio
    async def test_remove_already_deleted(self, repo) -> None:
        info = await create_worktree(str(repo), "agent")
        shutil.rmtree(info.path)
        await remove_worktree(info)
        listing = subprocess.run(
            ["git", "worktree", "list"], cwd=repo, capture_output=True, text=True, check=True
        ).stdout
        assert info.path not in listing


class TestReadMarker:
    def test_missing(self, tmp_path) -> None:
        assert read_marker(tmp_path) is None

    def test_corrupt(self, tmp_path) -> None:
        (tmp_path / MARKER_FILENAME).write_text("{broken")
        assert read_marker(tmp_path) is None

    def test_valid(self, tmp_path) -> None:
        info = WorktreeInfo(path=str(tmp_path), repo_root="/repo", agent_id="a", created_at=1.0)
        (tmp_path / MARKER_FILENAME).write_text(info.model_dump_json())
        assert read_marker(tmp_path) == info
