"""
Core data model shared by the workflows, activities and controllers.

Everything here crosses the Temporal boundary as a workflow or activity
payload, so types are plain dataclasses the pydantic data converter can
encode and decode.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TaskType(str, Enum):
    """Task types; the value is used as the branch prefix."""
    FEATURE = "feature"
    BUGFIX = "bugfix"
    REFACTOR = "refactor"
    DOCS = "docs"


@dataclass(frozen=True)
class Task:
    """
    A unit of requested development work.

    Immutable once created; fix attempts are new tasks, never edits.
    """
    id: str
    title: str
    context: str
    acceptance_criteria: Tuple[str, ...] = ()
    files_to_modify: Tuple[str, ...] = ()
    priority: TaskPriority = TaskPriority.MEDIUM
    created_at: datetime = field(default_factory=datetime.utcnow)
    task_type: TaskType = TaskType.FEATURE
    project_id: Optional[str] = None


# -----------------------------------------------------------------------------
# Activity outputs
# -----------------------------------------------------------------------------
class _Serializable:
    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProposedChange(_Serializable):
    path: str
    action: str
    description: str = ""


@dataclass
class PlanOutput(_Serializable):
    proposed_changes: List[ProposedChange] = field(default_factory=list)
    verification_plan: str = ""
    estimated_effort: str = ""

    def summary(self) -> str:
        lines = [f"- {c.action} {c.path}: {c.description}" for c in self.proposed_changes]
        return "\n".join(lines) or "(no changes proposed)"


@dataclass
class CoderOutput(_Serializable):
    pr_url: Optional[str] = None
    branch: Optional[str] = None
    files_changed: List[str] = field(default_factory=list)
    tests_passed: bool = False
    commit_sha: Optional[str] = None
    error: Optional[str] = None


@dataclass
class ReviewOutput(_Serializable):
    approved: bool
    issues: List[str] = field(default_factory=list)
    fix_suggestions: List[str] = field(default_factory=list)

    def feedback(self) -> str:
        parts = [f"- {issue}" for issue in self.issues]
        parts.extend(f"- Suggested fix: {s}" for s in self.fix_suggestions)
        return "\n".join(parts)


@dataclass
class DeployOutput(_Serializable):
    success: bool
    merge_commit_sha: Optional[str] = None
    branch_deleted: bool = False
    deployment_url: Optional[str] = None
    error: Optional[str] = None


@dataclass
class VerifyOutput(_Serializable):
    passed: bool
    details: str = ""
    error: Optional[str] = None


@dataclass
class RollbackResult(_Serializable):
    success: bool
    reverted_commit: str = ""
    revert_commit_sha: Optional[str] = None
    branch: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FixTaskResult(_Serializable):
    fix_task_id: str
    run_id: str
    chain_depth: int


@dataclass
class FixLoopCheck(_Serializable):
    is_loop: bool
    chain_depth: int


# -----------------------------------------------------------------------------
# Run identity
# -----------------------------------------------------------------------------
DEVELOP_WORKFLOW = "DevelopFeatureWorkflow"
SELF_HEAL_WORKFLOW = "SelfHealWorkflow"
SELF_HEAL_RUN_ID = "self-heal-monitor"


def develop_run_id(task_id: str) -> str:
    return f"develop-{task_id}"


def fix_run_id(original_task_id: str, depth: int) -> str:
    return f"fix-workflow-{original_task_id}-{depth}"


def fix_task_id(original_task_id: str, depth: int) -> str:
    return f"fix-{original_task_id}-{depth}"


@dataclass
class RunOptions:
    """
    Per-run settings, fixed when the run is submitted.

    Workflow code cannot read the environment, so the submitter resolves
    these from SwarmSettings and every replay sees the same values.
    """
    approval_timeout_seconds: float = 24 * 60 * 60
    max_implementation_attempts: int = 3
    auto_fix_enabled: bool = True
    activity_timeout_seconds: float = 15 * 60
    activity_max_attempts: int = 3
    activity_initial_interval_seconds: float = 5.0
    activity_backoff_coefficient: float = 2.0
    activity_max_interval_seconds: float = 120.0


@dataclass
class DevelopInput:
    """Input of one orchestrator run."""
    task: Task
    skip_approval: bool = False
    notify_on_complete: bool = True
    is_fix_attempt: bool = False
    original_task_id: Optional[str] = None
    options: RunOptions = field(default_factory=RunOptions)

    @property
    def chain_root(self) -> str:
        """Task id whose fix chain this run belongs to."""
        return self.original_task_id or self.task.id
