"""
Development Activities

The side-effecting steps of an orchestrator run. Each method is a Temporal
activity run under the workflow's timeout and retry policy, so every method
must be safe to run again after a partial failure.

Logical failures (no changes produced, merge refused, deploy command
failed) come back as structured outputs. Infrastructure failures raise and
are retried by the policy.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from temporalio import activity

from .config import SwarmSettings
from .errors import ConfigurationError, ValidationError
from .git_ops import git, head_sha, run_shell_command
from .llm import LLMClient
from .models import (
    CoderOutput,
    DeployOutput,
    FixLoopCheck,
    FixTaskResult,
    PlanOutput,
    ProposedChange,
    ReviewOutput,
    RollbackResult,
    Task,
    VerifyOutput,
)
from .notification_engine import Notification, NotificationEngine
from .plan_parser import parse_json_from_response
from .rollback import RollbackController
from .scm_providers import SCMProvider
from .worktree_manager import WorktreeManager

logger = logging.getLogger("activities")

MAX_DIFF_CHARS = 50_000
MAX_OUTPUT_CHARS = 2_000


def _bullets(items) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


def _tail(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    text = text.strip()
    return text[-limit:]


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return [str(v) for v in value]


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------
def build_plan_prompt(task: Task) -> str:
    return f"""You are the planner of an autonomous development team.

Analyze the repository and produce an implementation plan for this task.

Task ID: {task.id}
Title: {task.title}
Type: {task.task_type.value}
Priority: {task.priority.value}

Context:
{task.context}

Acceptance criteria:
{_bullets(task.acceptance_criteria)}

Files likely to change:
{_bullets(task.files_to_modify)}

Do not modify any files. Respond with JSON only, in this shape:
{{"proposedChanges": [{{"path": "src/file.py", "action": "create|modify|delete", "description": "..."}}],
 "verificationPlan": "how to verify the change",
 "estimatedEffort": "small|medium|large"}}
"""


def build_coder_prompt(task: Task, plan: PlanOutput, feedback: str = "") -> str:
    prompt = f"""You are the coder of an autonomous development team.

Implement the following task in this working tree.

Task ID: {task.id}
Title: {task.title}

Context:
{task.context}

Acceptance criteria:
{_bullets(task.acceptance_criteria)}

Approved plan:
{plan.summary()}

Verification plan:
{plan.verification_plan}
"""
    if feedback:
        prompt += f"""
A previous attempt was rejected. Address every point below:
{feedback}
"""
    prompt += """
Run the project's tests when it has them. Do not push.
When done, respond with JSON only: {"testsPassed": true|false, "summary": "what you changed"}
"""
    return prompt


def build_review_prompt(task: Task, plan: PlanOutput, diff: str) -> str:
    return f"""You are the reviewer of an autonomous development team.

Review this change against the task and the approved plan.

Task: {task.title}

Acceptance criteria:
{_bullets(task.acceptance_criteria)}

Approved plan:
{plan.summary()}

Diff:
{diff}

Reject only for bugs, missing acceptance criteria or broken tests.
Respond with JSON only: {{"approved": true|false, "issues": ["..."], "fixSuggestions": ["..."]}}
"""


class DevelopmentActivities:
    """Activities an orchestrator run invokes, bound to the worker's clients."""

    def __init__(
        self,
        settings: SwarmSettings,
        llm: LLMClient,
        worktrees: WorktreeManager,
        rollback: RollbackController,
        notifications: NotificationEngine,
        scm: Optional[SCMProvider] = None,
    ):
        self.settings = settings
        self.llm = llm
        self.worktrees = worktrees
        self.rollback = rollback
        self.notifications = notifications
        self.scm = scm
        self._active_tasks: Dict[str, int] = {}

    @property
    def repo_path(self) -> Path:
        return Path(self.settings.repo_path)

    @property
    def active_task_ids(self) -> List[str]:
        """Tasks with a planning, coding or review activity in flight on this worker."""
        return list(self._active_tasks)

    @contextmanager
    def _working_on(self, task_id: str) -> Iterator[None]:
        self._active_tasks[task_id] = self._active_tasks.get(task_id, 0) + 1
        try:
            yield
        finally:
            self._active_tasks[task_id] -= 1
            if not self._active_tasks[task_id]:
                del self._active_tasks[task_id]

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------
    @activity.defn
    async def plan_task(self, task: Task) -> PlanOutput:
        logger.info(f"Planning task {task.id}: {task.title}")
        with self._working_on(task.id):
            response = await self.llm.invoke(build_plan_prompt(task), cwd=self.repo_path)
        data = parse_json_from_response(response)

        changes = data.get("proposedChanges")
        if not isinstance(changes, list):
            raise ValidationError("Plan is missing proposedChanges", {"task_id": task.id})
        plan = PlanOutput(
            proposed_changes=[
                ProposedChange(
                    path=str(c.get("path", "")),
                    action=str(c.get("action", "modify")),
                    description=str(c.get("description", "")),
                )
                for c in changes if isinstance(c, dict)
            ],
            verification_plan=str(data.get("verificationPlan", "")),
            estimated_effort=str(data.get("estimatedEffort", "")),
        )
        logger.info(f"Plan for {task.id}: {len(plan.proposed_changes)} change(s), effort {plan.estimated_effort}")
        return plan

    # -------------------------------------------------------------------------
    # Implementation
    # -------------------------------------------------------------------------
    @activity.defn
    async def implement_changes(self, task: Task, plan: PlanOutput, feedback: str = "") -> CoderOutput:
        """
        Implement the plan in a fresh worktree, commit, push and open a PR.

        A retried attempt recreates the worktree and branch from scratch.
        """
        with self._working_on(task.id):
            return await self._implement(task, plan, feedback)

    async def _implement(self, task: Task, plan: PlanOutput, feedback: str) -> CoderOutput:
        worktree = await self.worktrees.create_worktree(task.id, task.task_type.value, task.title)
        path = Path(worktree.path)

        response = await self.llm.invoke(build_coder_prompt(task, plan, feedback), cwd=path)
        try:
            report = parse_json_from_response(response)
        except ValidationError:
            report = {}
        summary = str(report.get("summary", ""))

        if await git(path, "status", "--porcelain"):
            await git(path, "add", "-A")
            await git(path, "commit", "-m", f"feat({task.id}): {task.title}")

        base = f"origin/{self.settings.base_branch}"
        files_changed = [
            f for f in (await git(path, "diff", "--name-only", f"{base}...HEAD")).splitlines() if f
        ]
        if not files_changed:
            return CoderOutput(branch=worktree.branch, error="The coder produced no changes")

        commit_sha = await head_sha(path)
        tests_passed = report.get("testsPassed", True) is not False
        if not tests_passed:
            return CoderOutput(
                branch=worktree.branch,
                files_changed=files_changed,
                commit_sha=commit_sha,
                error=f"Local tests failed: {summary or 'no details'}",
            )

        pr_url = None
        if self.scm is not None:
            await self.scm.configure_git_credentials(path)
            await git(path, "push", "-u", "origin", worktree.branch)
            pr_url = await self.scm.create_pull_request(
                title=f"feat({task.id}): {task.title}",
                description=f"{task.context}\n\n## Plan\n{plan.summary()}\n\n## Summary\n{summary}",
                source_branch=worktree.branch,
                target_branch=self.settings.base_branch,
            )

        logger.info(f"Implemented {task.id} on {worktree.branch}: {len(files_changed)} file(s), PR {pr_url}")
        return CoderOutput(
            pr_url=pr_url,
            branch=worktree.branch,
            files_changed=files_changed,
            tests_passed=True,
            commit_sha=commit_sha,
        )

    # -------------------------------------------------------------------------
    # Review
    # -------------------------------------------------------------------------
    @activity.defn
    async def review_changes(self, task: Task, plan: PlanOutput, coder: CoderOutput) -> ReviewOutput:
        if not coder.branch:
            raise ValidationError("Nothing to review: implementation produced no branch", {"task_id": task.id})
        diff = await git(self.repo_path, "diff", f"origin/{self.settings.base_branch}...{coder.branch}")
        if len(diff) > MAX_DIFF_CHARS:
            diff = diff[:MAX_DIFF_CHARS] + "\n... (diff truncated)"

        with self._working_on(task.id):
            response = await self.llm.invoke(build_review_prompt(task, plan, diff), cwd=self.repo_path)
        data = parse_json_from_response(response)
        if "approved" not in data:
            raise ValidationError("Review is missing 'approved'", {"task_id": task.id})

        review = ReviewOutput(
            approved=bool(data["approved"]),
            issues=_as_list(data.get("issues")),
            fix_suggestions=_as_list(data.get("fixSuggestions")),
        )
        logger.info(f"Review of {task.id}: {'approved' if review.approved else 'rejected'} "
                    f"({len(review.issues)} issue(s))")
        return review

    # -------------------------------------------------------------------------
    # Release
    # -------------------------------------------------------------------------
    @activity.defn
    async def deploy_changes(self, pr_url: Optional[str]) -> DeployOutput:
        """Merge the PR with MERGE_METHOD, delete its branch, then run DEPLOY_COMMAND if set."""
        if self.scm is None:
            raise ConfigurationError("No SCM provider configured, cannot merge pull requests")
        if not pr_url:
            return DeployOutput(success=False, error="No pull request to merge")

        merge = await self.scm.merge_pull_request(
            pr_url, delete_branch=True, merge_method=self.settings.merge_method
        )
        if not merge.success:
            return DeployOutput(success=False, error=f"Merge failed: {merge.error}")

        if self.settings.deploy_command:
            exit_code, stdout, stderr = await run_shell_command(
                self.settings.deploy_command,
                cwd=self.repo_path,
                timeout=self.settings.command_timeout_seconds,
            )
            if exit_code != 0:
                logger.error(f"Deploy command failed ({exit_code}) for {pr_url}")
                return DeployOutput(
                    success=False,
                    merge_commit_sha=merge.merge_commit_sha,
                    branch_deleted=merge.branch_deleted,
                    error=f"Deploy command exited with {exit_code}: {_tail(stderr or stdout)}",
                )

        logger.info(f"Deployed {pr_url} ({merge.merge_commit_sha})")
        return DeployOutput(
            success=True,
            merge_commit_sha=merge.merge_commit_sha,
            branch_deleted=merge.branch_deleted,
            deployment_url=self.settings.extra.get("deployment_url"),
        )

    @activity.defn
    async def verify_deployment(self, expected_commit: Optional[str] = None) -> VerifyOutput:
        if not self.settings.verify_command:
            return VerifyOutput(passed=True, details="No verify command configured, verification skipped")

        command = self.settings.verify_command
        if expected_commit:
            command = command.replace("{commit}", expected_commit)
        exit_code, stdout, stderr = await run_shell_command(
            command, cwd=self.repo_path, timeout=self.settings.command_timeout_seconds
        )
        if exit_code != 0:
            return VerifyOutput(
                passed=False,
                details=_tail(stdout),
                error=f"Verification exited with {exit_code}: {_tail(stderr or stdout, 500)}",
            )
        return VerifyOutput(passed=True, details=_tail(stdout))

    # -------------------------------------------------------------------------
    # Notifications and fix chain
    # -------------------------------------------------------------------------
    @activity.defn
    async def send_notification(self, notification: Notification) -> bool:
        return await self.notifications.send(notification)

    @activity.defn
    async def rollback_commit(self, commit_sha: str, reason: str = "") -> RollbackResult:
        return await self.rollback.rollback_commit(commit_sha, reason)

    @activity.defn
    async def create_fix_task(
        self,
        original_task_id: str,
        title: str,
        error: str,
        commit_sha: Optional[str] = None,
        context: Optional[str] = None,
    ) -> FixTaskResult:
        return await self.rollback.create_fix_task(original_task_id, title, error, commit_sha, context)

    @activity.defn
    async def check_fix_task_loop(self, original_task_id: str) -> FixLoopCheck:
        return await self.rollback.check_fix_task_loop(original_task_id)

    def describe(self) -> Dict[str, Any]:
        return {
            "repo_path": str(self.repo_path),
            "base_branch": self.settings.base_branch,
            "llm_provider": self.llm.provider,
            "scm": self.scm.config.to_safe_dict() if self.scm else None,
        }
