"""
Subprocess helpers for git and external commands.
"""

import asyncio
import logging
import shlex
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import GitCommandError

logger = logging.getLogger("git_ops")

GIT_TIMEOUT_SECONDS = 120


async def run_command(
    args: List[str],
    cwd: Optional[Path] = None,
    timeout: float = GIT_TIMEOUT_SECONDS,
    env: Optional[dict] = None,
) -> Tuple[int, str, str]:
    """
    Run a command and capture its output.

    Returns (exit_code, stdout, stderr). A timeout kills the process and
    reports exit code -1. A missing executable reports exit code 127.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
    except FileNotFoundError:
        return 127, "", f"{args[0]}: command not found"

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return -1, "", f"Command timed out after {timeout}s"

    return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")


async def run_shell_command(command: str, cwd: Optional[Path] = None, timeout: float = 600) -> Tuple[int, str, str]:
    """Run a configured command line such as DEPLOY_COMMAND (no shell expansion)."""
    return await run_command(shlex.split(command), cwd=cwd, timeout=timeout)


async def git(repo_path: Path, *args: str, timeout: float = GIT_TIMEOUT_SECONDS) -> str:
    """Run a git command in `repo_path`; raise GitCommandError on non-zero exit."""
    exit_code, stdout, stderr = await run_command(["git", *args], cwd=repo_path, timeout=timeout)
    if exit_code != 0:
        raise GitCommandError(" ".join(args), exit_code, stderr or stdout)
    return stdout.strip()


async def current_branch(repo_path: Path) -> str:
    return await git(repo_path, "rev-parse", "--abbrev-ref", "HEAD")


async def head_sha(repo_path: Path) -> str:
    return await git(repo_path, "rev-parse", "HEAD")


async def revert_in_progress(repo_path: Path) -> bool:
    """True while a revert is stopped on conflicts."""
    git_dir = await git(repo_path, "rev-parse", "--git-dir")
    path = Path(git_dir)
    if not path.is_absolute():
        path = repo_path / path
    return (path / "REVERT_HEAD").exists()
