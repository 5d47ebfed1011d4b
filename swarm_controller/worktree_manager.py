"""
Git worktrees for parallel task development.

Each implementation attempt works in its own worktree on a task/<name>
branch cut from origin/<base>. The name carries the task id, so two tasks
with the same title never share a checkout or a branch.
"""

import logging
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from .errors import GitCommandError
from .git_ops import git

logger = logging.getLogger("worktree_manager")

TASK_ID_SLUG_LENGTH = 24


@dataclass
class WorktreeInfo:
    path: str
    branch: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "branch": self.branch, "name": self.name}


def slugify(text: str, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "task"


class WorktreeManager:
    def __init__(
        self,
        repo_path: Path,
        worktree_dir: Optional[Path] = None,
        base_branch: str = "main",
        retention_seconds: float = 24 * 60 * 60,
    ):
        self.repo_path = Path(repo_path)
        self.worktree_dir = Path(worktree_dir) if worktree_dir else self.repo_path / "worktrees"
        self.base_branch = base_branch
        self.retention_seconds = retention_seconds

    async def create_worktree(self, task_id: str, task_type: str, slug: str) -> WorktreeInfo:
        """Create a fresh worktree, replacing leftovers from an earlier attempt."""
        self.worktree_dir.mkdir(parents=True, exist_ok=True)
        date_str = datetime.utcnow().strftime("%Y%m%d")
        name = f"task-{date_str}-{task_type}-{slugify(task_id, TASK_ID_SLUG_LENGTH)}-{slugify(slug)}"
        path = self.worktree_dir / name
        branch = f"task/{name}"

        logger.info(f"Creating worktree {name} for {task_id}")
        await git(self.repo_path, "fetch", "origin", self.base_branch)

        # Leftovers from a retried attempt
        for args in (("worktree", "remove", "--force", str(path)), ("branch", "-D", branch)):
            try:
                await git(self.repo_path, *args)
            except GitCommandError:
                pass
        try:
            await git(self.repo_path, "push", "origin", "--delete", branch)
        except GitCommandError:
            pass
        if path.exists():
            shutil.rmtree(path, ignore_errors=True)
        await git(self.repo_path, "worktree", "prune")

        await git(self.repo_path, "worktree", "add", "-b", branch, str(path), f"origin/{self.base_branch}")
        return WorktreeInfo(path=str(path), branch=branch, name=name)

    async def remove_worktree(self, path: Path, force: bool = False) -> None:
        """Remove a worktree and delete its branch."""
        path = Path(path)
        branch = (await self._branches()).get(str(path.resolve()))
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        try:
            await git(self.repo_path, *args, str(path))
        except GitCommandError as e:
            if not force:
                raise
            logger.warning(f"git worktree remove failed for {path}, deleting directory: {e.message}")
            shutil.rmtree(path, ignore_errors=True)
        if branch:
            try:
                await git(self.repo_path, "branch", "-D", branch)
                logger.info(f"Deleted branch {branch}")
            except GitCommandError as e:
                logger.warning(f"Failed to delete branch {branch}: {e.message}")

    async def prune_worktrees(self) -> Dict[str, int]:
        """git worktree prune, then remove worktree directories past retention."""
        await git(self.repo_path, "worktree", "prune")
        pruned = 0
        if not self.worktree_dir.exists():
            return {"pruned": 0}
        cutoff = time.time() - self.retention_seconds
        for entry in self.worktree_dir.iterdir():
            try:
                if entry.stat().st_mtime < cutoff:
                    logger.info(f"Pruning stale worktree {entry}")
                    await self.remove_worktree(entry, force=True)
                    pruned += 1
            except (OSError, GitCommandError) as e:
                logger.warning(f"Failed to prune worktree {entry}: {e}")
        return {"pruned": pruned}

    async def _branches(self) -> Dict[str, str]:
        """Worktree path -> branch name, from `git worktree list --porcelain`."""
        output = await git(self.repo_path, "worktree", "list", "--porcelain")
        result: Dict[str, str] = {}
        current = None
        for line in output.splitlines():
            if line.startswith("worktree "):
                current = str(Path(line[len("worktree "):]).resolve())
            elif line.startswith("branch ") and current:
                result[current] = line[len("branch "):].replace("refs/heads/", "")
        return result
