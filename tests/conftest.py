"""
Pytest configuration for swarm controller tests.

This module provides:
1. A controllable clock for TTL and maintenance-window tests
2. In-memory state store and a time-skipping Temporal test environment
3. Throwaway git repositories with an "origin" remote
"""

import shutil

import pytest
import pytest_asyncio
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.testing import WorkflowEnvironment

from swarm_controller.shared_state import InMemoryStateStore

from .helpers import FakeClock, commit_file, run_git


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """In-memory state store whose TTLs follow the fake clock."""
    return InMemoryStateStore(clock=clock.time)


@pytest_asyncio.fixture
async def workflow_env():
    """Temporal test server that skips time while a test waits on a workflow result."""
    async with await WorkflowEnvironment.start_time_skipping(data_converter=pydantic_data_converter) as env:
        yield env


# -----------------------------------------------------------------------------
# Git repositories
# -----------------------------------------------------------------------------
@pytest.fixture
def git_repo(tmp_path):
    """
    A working clone on branch main with a bare origin.

    The initial commit adds app.txt and is already pushed.
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    origin = tmp_path / "origin.git"
    origin.mkdir()
    run_git(origin, "init", "--bare")
    run_git(origin, "symbolic-ref", "HEAD", "refs/heads/main")

    work = tmp_path / "work"
    run_git(tmp_path, "clone", str(origin), str(work))
    run_git(work, "config", "user.email", "swarm@example.com")
    run_git(work, "config", "user.name", "Swarm Tests")
    run_git(work, "config", "commit.gpgsign", "false")
    run_git(work, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(work, "app.txt", "version one\n", "initial")
    run_git(work, "push", "-u", "origin", "main")
    return work
