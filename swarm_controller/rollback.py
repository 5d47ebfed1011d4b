"""
Rollback & Fix-Chain Controller

Reverts a bad deploy on the branch that is currently checked out, spawns
fix tasks as new orchestrator runs, and stops fix chains that keep failing.

Fix lineage is tracked by depth only: task:chain:<originalTaskId> is an
integer incremented atomically per fix attempt and expires after 7 days.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

from .config import DEFAULT_TASK_QUEUE, FIX_CHAIN_TTL_SECONDS, FIX_LOOP_THRESHOLD
from .errors import ConfigurationError, GitCommandError
from .git_ops import current_branch, git, head_sha, revert_in_progress
from .models import (
    DEVELOP_WORKFLOW,
    DevelopInput,
    FixLoopCheck,
    FixTaskResult,
    RollbackResult,
    RunOptions,
    Task,
    TaskPriority,
    TaskType,
    fix_run_id,
    fix_task_id,
)
from .shared_state import StateStore, fix_chain_key

logger = logging.getLogger("rollback")

FIX_TITLE_PREFIX = "[FIX] "
FIX_ACCEPTANCE_CRITERIA = (
    "The original error is resolved",
    "Build and tests pass successfully",
    "No new issues are introduced",
)


class RollbackController:
    def __init__(
        self,
        repo_path: Path,
        store: StateStore,
        client: Optional[Client] = None,
        task_queue: str = DEFAULT_TASK_QUEUE,
        run_options: Optional[RunOptions] = None,
        chain_ttl_seconds: int = FIX_CHAIN_TTL_SECONDS,
        loop_threshold: int = FIX_LOOP_THRESHOLD,
        git_timeout: float = 120,
    ):
        self._repo_path = Path(repo_path)
        self._store = store
        self.client = client
        self._task_queue = task_queue
        self._run_options = run_options or RunOptions()
        self._chain_ttl_seconds = chain_ttl_seconds
        self._loop_threshold = loop_threshold
        self._git_timeout = git_timeout
        # One working copy, so rollbacks must not interleave
        self._lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Rollback
    # -------------------------------------------------------------------------
    async def rollback_commit(self, commit_sha: str, reason: str = "") -> RollbackResult:
        """
        Revert `commit_sha` on the current branch and push the revert.

        Never raises. On failure any in-progress revert is aborted and a
        revert commit that could not be pushed is dropped, so the working
        copy is left as it was before the attempt.
        """
        async with self._lock:
            return await self._rollback(commit_sha, reason)

    async def _rollback(self, commit_sha: str, reason: str) -> RollbackResult:
        logger.info(f"Rolling back {commit_sha}: {reason or 'no reason given'}")
        branch = None
        pre_revert_head = None
        try:
            branch = await current_branch(self._repo_path)
            if branch == "HEAD":
                raise GitCommandError("rev-parse --abbrev-ref HEAD", 0, "detached HEAD, no branch to roll back")
            await self._git("fetch", "origin")
            await self._git("checkout", branch)
            await self._git("pull", "--ff-only", "origin", branch)
            pre_revert_head = await head_sha(self._repo_path)
            await self._git("revert", "--no-edit", commit_sha)
            revert_sha = await head_sha(self._repo_path)
            await self._git("push", "origin", branch)
        except GitCommandError as e:
            logger.error(f"Rollback of {commit_sha} failed: {e.message}")
            await self._restore(pre_revert_head)
            return RollbackResult(success=False, reverted_commit=commit_sha, branch=branch, error=e.message)

        logger.info(f"Rolled back {commit_sha} on {branch} with revert {revert_sha}")
        return RollbackResult(
            success=True,
            reverted_commit=commit_sha,
            revert_commit_sha=revert_sha,
            branch=branch,
        )

    async def _restore(self, pre_revert_head: Optional[str]) -> None:
        try:
            if await revert_in_progress(self._repo_path):
                await self._git("revert", "--abort")
                logger.info("Aborted in-progress revert")
            if pre_revert_head and await head_sha(self._repo_path) != pre_revert_head:
                await self._git("reset", "--hard", pre_revert_head)
                logger.info(f"Dropped unpushed revert, reset to {pre_revert_head}")
        except GitCommandError as e:
            logger.error(f"Failed to clean up after rollback: {e.message}")

    async def _git(self, *args: str) -> str:
        return await git(self._repo_path, *args, timeout=self._git_timeout)

    # -------------------------------------------------------------------------
    # Fix chain
    # -------------------------------------------------------------------------
    async def create_fix_task(
        self,
        original_task_id: str,
        title: str,
        error: str,
        commit_sha: Optional[str] = None,
        context: Optional[str] = None,
    ) -> FixTaskResult:
        """Record one more fix attempt and start it as a new run with approval skipped."""
        key = fix_chain_key(original_task_id)
        depth = await self._store.incr(key)
        await self._store.expire(key, self._chain_ttl_seconds)

        base_title = title[len(FIX_TITLE_PREFIX):] if title.startswith(FIX_TITLE_PREFIX) else title
        context_lines = [
            f"This is an automated fix for task {original_task_id} (fix attempt #{depth}).",
            f"Failed commit: {commit_sha or 'unknown'}",
            "",
            "Error:",
            error,
        ]
        if context:
            context_lines.extend(["", "Original context:", context])

        task = Task(
            id=fix_task_id(original_task_id, depth),
            title=f"{FIX_TITLE_PREFIX}{base_title}",
            context="\n".join(context_lines),
            acceptance_criteria=FIX_ACCEPTANCE_CRITERIA,
            priority=TaskPriority.HIGH,
            task_type=TaskType.BUGFIX,
        )
        run_id = fix_run_id(original_task_id, depth)
        develop_input = DevelopInput(
            task=task,
            skip_approval=True,
            notify_on_complete=True,
            is_fix_attempt=True,
            original_task_id=original_task_id,
            options=self._run_options,
        )
        if self.client is None:
            raise ConfigurationError("RollbackController has no Temporal client to start fix runs")
        try:
            await self.client.start_workflow(DEVELOP_WORKFLOW, develop_input, id=run_id, task_queue=self._task_queue)
        except WorkflowAlreadyStartedError:
            # A retried activity already started this depth's run
            logger.info(f"Fix run {run_id} already started")

        logger.info(f"Created fix task {task.id} (depth {depth}) as run {run_id}")
        return FixTaskResult(fix_task_id=task.id, run_id=run_id, chain_depth=depth)

    async def check_fix_task_loop(self, original_task_id: str) -> FixLoopCheck:
        """Read the chain depth without changing it."""
        raw = await self._store.get(fix_chain_key(original_task_id))
        depth = int(raw) if raw else 0
        is_loop = depth >= self._loop_threshold
        if is_loop:
            logger.warning(f"Fix loop detected for {original_task_id}: depth {depth}")
        return FixLoopCheck(is_loop=is_loop, chain_depth=depth)
