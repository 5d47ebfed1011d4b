"""
Worktree Manager Tests

Worktrees are created from a real clone with a bare origin.
"""

import os
import time
from pathlib import Path

import pytest

from swarm_controller.worktree_manager import WorktreeManager, slugify

from .helpers import commit_file, run_git


@pytest.fixture
def manager(git_repo, tmp_path):
    return WorktreeManager(git_repo, worktree_dir=tmp_path / "worktrees")


def branch_exists(repo: Path, branch: str) -> bool:
    return bool(run_git(repo, "branch", "--list", branch))


class TestSlugify:
    """Tests for branch-safe names."""

    def test_lowercases_and_collapses(self):
        assert slugify("Add  Order/History!") == "add-order-history"

    def test_truncates_without_trailing_dash(self):
        assert slugify("a" * 39 + " b", max_length=40) == "a" * 39

    def test_empty_falls_back(self):
        assert slugify("???") == "task"


class TestCreateWorktree:
    """Tests for per-task worktrees."""

    @pytest.mark.asyncio
    async def test_name_carries_task_id(self, manager):
        worktree = await manager.create_worktree("T1", "feature", "Add order history")

        assert worktree.name.endswith("-feature-t1-add-order-history")
        assert worktree.branch == f"task/{worktree.name}"
        assert (Path(worktree.path) / "app.txt").read_text() == "version one\n"

    @pytest.mark.asyncio
    async def test_same_title_keeps_tasks_apart(self, manager, git_repo):
        first = await manager.create_worktree("T1", "feature", "Add order history")
        commit_file(Path(first.path), "orders.py", "ORDERS = []\n", "T1 work")

        second = await manager.create_worktree("T2", "feature", "Add order history")

        assert first.path != second.path
        assert first.branch != second.branch
        assert (Path(first.path) / "orders.py").read_text() == "ORDERS = []\n"
        assert not (Path(second.path) / "orders.py").exists()
        assert branch_exists(git_repo, first.branch)
        assert run_git(git_repo, "log", "-1", "--format=%s", first.branch) == "T1 work"

    @pytest.mark.asyncio
    async def test_retry_of_same_task_starts_fresh(self, manager, git_repo):
        first = await manager.create_worktree("T1", "feature", "Add order history")
        commit_file(Path(first.path), "orders.py", "broken\n", "attempt one")

        second = await manager.create_worktree("T1", "feature", "Add order history")

        assert second.path == first.path
        assert not (Path(second.path) / "orders.py").exists()
        assert run_git(git_repo, "log", "-1", "--format=%s", second.branch) == "initial"


class TestRemoveAndPrune:
    """Tests for cleanup."""

    @pytest.mark.asyncio
    async def test_remove_deletes_branch(self, manager, git_repo):
        worktree = await manager.create_worktree("T1", "bugfix", "Fix totals")

        await manager.remove_worktree(Path(worktree.path))

        assert not Path(worktree.path).exists()
        assert not branch_exists(git_repo, worktree.branch)

    @pytest.mark.asyncio
    async def test_prune_removes_only_stale_worktrees(self, manager):
        stale = await manager.create_worktree("T1", "feature", "Old work")
        fresh = await manager.create_worktree("T2", "feature", "New work")
        old = time.time() - 2 * manager.retention_seconds
        os.utime(stale.path, (old, old))

        result = await manager.prune_worktrees()

        assert result == {"pruned": 1}
        assert not Path(stale.path).exists()
        assert Path(fresh.path).exists()

    @pytest.mark.asyncio
    async def test_prune_without_directory(self, git_repo, tmp_path):
        manager = WorktreeManager(git_repo, worktree_dir=tmp_path / "missing")
        assert await manager.prune_worktrees() == {"pruned": 0}
