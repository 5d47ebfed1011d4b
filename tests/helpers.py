"""
Shared test helpers: a controllable clock, fast run options, an async
iterator for mocked Temporal listings and git plumbing for throwaway
repositories.
"""

import subprocess
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable

from swarm_controller.models import RunOptions


class FakeClock:
    """Manually advanced UTC clock; call it for a datetime, .time() for epoch seconds."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


FAST_OPTIONS = RunOptions(
    approval_timeout_seconds=60 * 60,
    activity_timeout_seconds=30,
    activity_max_attempts=3,
    activity_initial_interval_seconds=0.01,
    activity_max_interval_seconds=0.05,
)


async def async_iter(items: Iterable[Any]) -> AsyncIterator[Any]:
    for item in items:
        yield item


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content)
    run_git(repo, "add", name)
    run_git(repo, "commit", "-m", message)
    return run_git(repo, "rev-parse", "HEAD")
