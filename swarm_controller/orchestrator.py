"""
Task Development Orchestrator

One Temporal workflow per task, id develop-<task id> (fix runs use
fix-workflow-<original task id>-<depth>):

    planning -> awaiting_approval -> implementing -> reviewing
             -> deploying -> verifying -> completed

awaiting_approval is skipped when approval is waived (fix attempts always
waive it). A rejected review sends the run back to implementing with the
review issues as feedback, up to max_implementation_attempts. A failed
deploy or verification reverts the merge and, unless the fix chain is
already looping, spawns a fix run.

Terminal stages: completed, completed_with_errors, failed, fix_created,
cancelled. A run never raises; every outcome is a result dict.

Signals:
- approve: honoured only while awaiting_approval, ignored with a warning
  otherwise
- cancel: any non-terminal stage; takes effect when the current activity
  returns

Query get_status returns the same dict as the result, at any point.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from .activities import DevelopmentActivities
    from .errors import NON_RETRYABLE_ERRORS, InvalidTransitionError
    from .models import (
        DEVELOP_WORKFLOW,
        CoderOutput,
        DeployOutput,
        DevelopInput,
        PlanOutput,
        RollbackResult,
        RunOptions,
        VerifyOutput,
    )
    from .notification_engine import Notification, NotificationTemplates


class Stage(str, Enum):
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    FIX_CREATED = "fix_created"
    CANCELLED = "cancelled"


TERMINAL_STAGES: FrozenSet[Stage] = frozenset({
    Stage.COMPLETED,
    Stage.COMPLETED_WITH_ERRORS,
    Stage.FAILED,
    Stage.FIX_CREATED,
    Stage.CANCELLED,
})

_RELEASE_OUTCOMES = frozenset({Stage.COMPLETED_WITH_ERRORS, Stage.FIX_CREATED, Stage.FAILED, Stage.CANCELLED})

VALID_TRANSITIONS: Dict[Stage, FrozenSet[Stage]] = {
    Stage.PLANNING: frozenset({Stage.AWAITING_APPROVAL, Stage.IMPLEMENTING, Stage.FAILED, Stage.CANCELLED}),
    Stage.AWAITING_APPROVAL: frozenset({Stage.IMPLEMENTING, Stage.FAILED, Stage.CANCELLED}),
    Stage.IMPLEMENTING: frozenset({Stage.REVIEWING, Stage.FAILED, Stage.CANCELLED}),
    Stage.REVIEWING: frozenset({Stage.DEPLOYING, Stage.IMPLEMENTING, Stage.FAILED, Stage.CANCELLED}),
    Stage.DEPLOYING: frozenset({Stage.VERIFYING}) | _RELEASE_OUTCOMES,
    Stage.VERIFYING: frozenset({Stage.COMPLETED}) | _RELEASE_OUTCOMES,
    Stage.COMPLETED: frozenset(),
    Stage.COMPLETED_WITH_ERRORS: frozenset(),
    Stage.FAILED: frozenset(),
    Stage.FIX_CREATED: frozenset(),
    Stage.CANCELLED: frozenset(),
}


def can_transition(from_stage: Stage, to_stage: Stage) -> bool:
    return to_stage in VALID_TRANSITIONS.get(from_stage, frozenset())


@dataclass
class OrchestratorRun:
    """Observable state of one orchestrator run."""
    run_id: str
    task_id: str
    stage: Stage = Stage.PLANNING
    approved: bool = False
    cancel_requested: bool = False
    is_fix_attempt: bool = False
    original_task_id: Optional[str] = None
    stage_history: List[str] = field(default_factory=lambda: [Stage.PLANNING.value])
    implementation_attempts: int = 0
    error: Optional[str] = None
    plan: Optional[Dict[str, Any]] = None
    pr_url: Optional[str] = None
    commit_sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    rollback: Optional[Dict[str, Any]] = None
    fix_run_id: Optional[str] = None
    fix_task_id: Optional[str] = None
    fix_chain_depth: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def status(self) -> str:
        return self.stage.value if self.is_terminal else "running"

    def transition(self, to_stage: Stage) -> None:
        if not can_transition(self.stage, to_stage):
            raise InvalidTransitionError(self.run_id, self.stage.value, to_stage.value)
        self.stage = to_stage
        self.stage_history.append(to_stage.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "status": self.status,
            "stage": self.stage.value,
            "stage_history": list(self.stage_history),
            "approved": self.approved,
            "cancel_requested": self.cancel_requested,
            "is_fix_attempt": self.is_fix_attempt,
            "original_task_id": self.original_task_id,
            "implementation_attempts": self.implementation_attempts,
            "error": self.error,
            "plan": self.plan,
            "pr_url": self.pr_url,
            "commit_sha": self.commit_sha,
            "merge_commit_sha": self.merge_commit_sha,
            "rollback": self.rollback,
            "fix_run_id": self.fix_run_id,
            "fix_task_id": self.fix_task_id,
            "fix_chain_depth": self.fix_chain_depth,
        }


def retry_policy_for(options: RunOptions) -> RetryPolicy:
    return RetryPolicy(
        initial_interval=timedelta(seconds=options.activity_initial_interval_seconds),
        backoff_coefficient=options.activity_backoff_coefficient,
        maximum_interval=timedelta(seconds=options.activity_max_interval_seconds),
        maximum_attempts=options.activity_max_attempts,
        non_retryable_error_types=[error.__name__ for error in NON_RETRYABLE_ERRORS],
    )


def _describe_timeout(seconds: float) -> str:
    if seconds >= 3600 and seconds % 3600 == 0:
        return f"{int(seconds // 3600)} hours"
    return f"{seconds:g} seconds"


def _cause(error: ActivityError) -> str:
    """The activity's own error message rather than Temporal's wrapper."""
    cause = error.cause
    return getattr(cause, "message", None) or str(cause or error)


@workflow.defn(name=DEVELOP_WORKFLOW)
class DevelopFeatureWorkflow:
    def __init__(self) -> None:
        self._run = OrchestratorRun(run_id=workflow.info().workflow_id, task_id="")
        self._develop: Optional[DevelopInput] = None
        self._options = RunOptions()
        self._retry_policy = retry_policy_for(self._options)

    # -- signals and queries --------------------------------------------------
    @workflow.signal
    def approve(self) -> None:
        if self._run.stage != Stage.AWAITING_APPROVAL:
            workflow.logger.warning(
                f"[{self._run.run_id}] Approve ignored: run is {self._run.stage.value}, not awaiting approval"
            )
            return
        self._run.approved = True

    @workflow.signal
    def cancel(self) -> None:
        if self._run.is_terminal:
            workflow.logger.warning(f"[{self._run.run_id}] Cancel ignored: run already {self._run.stage.value}")
            return
        self._run.cancel_requested = True

    @workflow.query
    def get_status(self) -> Dict[str, Any]:
        return self._run.to_dict()

    # -- entry ----------------------------------------------------------------
    @workflow.run
    async def run(self, develop: DevelopInput) -> Dict[str, Any]:
        self._develop = develop
        self._options = develop.options
        self._retry_policy = retry_policy_for(develop.options)
        self._run.task_id = develop.task.id
        self._run.is_fix_attempt = develop.is_fix_attempt
        self._run.original_task_id = develop.chain_root
        self._log(f"Started for task {develop.task.id}: {develop.task.title}")

        try:
            try:
                await self._develop_task()
            except ActivityError as e:
                await self._fail(f"{self._run.stage.value} failed: {_cause(e)}")
        except Exception as e:
            workflow.logger.exception(f"[{self._run.run_id}] Unexpected error in stage {self._run.stage.value}: {e}")
            if not self._run.is_terminal:
                self._run.error = f"Unexpected error during {self._run.stage.value}: {e}"
                self._run.stage = Stage.FAILED
                self._run.stage_history.append(Stage.FAILED.value)
        return self._run.to_dict()

    async def _develop_task(self) -> None:
        run, develop = self._run, self._develop
        task = develop.task

        plan = await self._activity(DevelopmentActivities.plan_task, task)
        run.plan = plan.to_dict()
        if self._stopped_by_cancel():
            return

        if not (develop.skip_approval or develop.is_fix_attempt):
            if not await self._await_approval(plan):
                return

        coder = await self._implement_with_review(plan)
        if coder is None:
            return

        self._enter(Stage.DEPLOYING)
        try:
            deploy = await self._activity(DevelopmentActivities.deploy_changes, coder.pr_url)
        except ActivityError as e:
            deploy = DeployOutput(success=False, error=_cause(e))
        if deploy.merge_commit_sha:
            run.merge_commit_sha = deploy.merge_commit_sha
        if self._stopped_by_cancel():
            return
        if not deploy.success:
            await self._handle_release_failure(f"Deployment failed: {deploy.error}")
            return

        self._enter(Stage.VERIFYING)
        try:
            verify = await self._activity(DevelopmentActivities.verify_deployment, run.merge_commit_sha)
        except ActivityError as e:
            verify = VerifyOutput(passed=False, error=_cause(e))
        if self._stopped_by_cancel():
            return
        if not verify.passed:
            await self._handle_release_failure(f"Verification failed: {verify.error or verify.details}")
            return

        self._finish(Stage.COMPLETED)
        if develop.notify_on_complete:
            await self._notify(NotificationTemplates.task_completed(run.run_id, task.title, run.pr_url, run.status))

    # -- approval -------------------------------------------------------------
    async def _await_approval(self, plan: PlanOutput) -> bool:
        timeout = self._options.approval_timeout_seconds
        self._enter(Stage.AWAITING_APPROVAL)
        await self._notify(NotificationTemplates.plan_ready(
            self._run.run_id, self._develop.task.title, plan.summary(), plan.estimated_effort
        ))
        try:
            await workflow.wait_condition(
                lambda: self._run.approved or self._run.cancel_requested,
                timeout=timedelta(seconds=timeout),
            )
        except asyncio.TimeoutError:
            await self._fail(f"Plan not approved within {_describe_timeout(timeout)}")
            return False
        return not self._stopped_by_cancel()

    # -- implementation with self-correction ----------------------------------
    async def _implement_with_review(self, plan: PlanOutput) -> Optional[CoderOutput]:
        run, task = self._run, self._develop.task
        max_attempts = self._options.max_implementation_attempts
        feedback = ""

        for attempt in range(1, max_attempts + 1):
            run.implementation_attempts = attempt
            self._enter(Stage.IMPLEMENTING)
            coder = await self._activity(DevelopmentActivities.implement_changes, task, plan, feedback)
            if self._stopped_by_cancel():
                return None
            if coder.error:
                feedback = coder.error
                self._log(f"Implementation attempt {attempt} failed: {coder.error}", warning=True)
                continue

            run.pr_url = coder.pr_url
            run.commit_sha = coder.commit_sha
            self._enter(Stage.REVIEWING)
            review = await self._activity(DevelopmentActivities.review_changes, task, plan, coder)
            if self._stopped_by_cancel():
                return None
            if review.approved:
                return coder
            feedback = review.feedback() or "The reviewer rejected the change without details"
            self._log(f"Review rejected attempt {attempt}", warning=True)

        await self._fail(f"Implementation failed after {max_attempts} attempt(s). Last feedback: {feedback}")
        return None

    # -- release failure ------------------------------------------------------
    async def _handle_release_failure(self, error: str) -> None:
        run, task = self._run, self._develop.task
        run.error = error
        commit = run.merge_commit_sha
        if not commit:
            await self._fail(f"{error} (nothing was merged, no rollback needed)")
            return

        try:
            rollback = await self._activity(DevelopmentActivities.rollback_commit, commit, error)
        except ActivityError as e:
            rollback = RollbackResult(success=False, reverted_commit=commit, error=_cause(e))
        run.rollback = rollback.to_dict()

        if not rollback.success:
            await self._notify(NotificationTemplates.rollback(run.run_id, task.title, commit, error, False, None))
            await self._fail(f"{error}; rollback of {commit} failed: {rollback.error}", notify=False)
            return

        if not self._options.auto_fix_enabled:
            await self._notify(NotificationTemplates.rollback(run.run_id, task.title, commit, error, True, None))
            self._finish(Stage.COMPLETED_WITH_ERRORS)
            return

        chain_root = self._develop.chain_root
        try:
            loop = await self._activity(DevelopmentActivities.check_fix_task_loop, chain_root)
            if loop.is_loop:
                await self._notify(NotificationTemplates.fix_loop(run.run_id, chain_root, loop.chain_depth, error))
                await self._fail(
                    f"Fix loop detected for task {chain_root} after {loop.chain_depth} fix attempt(s); "
                    f"change rolled back and escalated for manual intervention. Last error: {error}",
                    notify=False,
                )
                return
            fix = await self._activity(
                DevelopmentActivities.create_fix_task, chain_root, task.title, error, commit, task.context
            )
        except ActivityError as e:
            self._log(f"Fix task not created: {_cause(e)}", warning=True)
            run.error = f"{error}; fix task not created: {_cause(e)}"
            await self._notify(NotificationTemplates.rollback(run.run_id, task.title, commit, error, True, None))
            self._finish(Stage.COMPLETED_WITH_ERRORS)
            return

        run.fix_run_id = fix.run_id
        run.fix_task_id = fix.fix_task_id
        run.fix_chain_depth = fix.chain_depth
        await self._notify(NotificationTemplates.rollback(run.run_id, task.title, commit, error, True, fix.run_id))
        self._finish(Stage.FIX_CREATED)

    # -- helpers --------------------------------------------------------------
    async def _activity(self, method, *args) -> Any:
        return await workflow.execute_activity_method(
            method,
            args=list(args),
            start_to_close_timeout=timedelta(seconds=self._options.activity_timeout_seconds),
            retry_policy=self._retry_policy,
        )

    def _stopped_by_cancel(self) -> bool:
        if not self._run.cancel_requested:
            return False
        self._log(f"Cancelled during {self._run.stage.value}")
        self._finish(Stage.CANCELLED)
        return True

    def _enter(self, stage: Stage) -> None:
        if self._run.stage == stage:
            return
        self._run.transition(stage)
        self._log(f"Stage -> {stage.value}")

    def _finish(self, stage: Stage) -> None:
        self._enter(stage)
        self._log(f"Finished: {stage.value}" + (f" ({self._run.error})" if self._run.error else ""))

    async def _fail(self, error: str, notify: bool = True) -> None:
        self._run.error = error
        self._finish(Stage.FAILED)
        if notify:
            await self._notify(NotificationTemplates.task_failed(self._run.run_id, self._develop.task.title, error))

    async def _notify(self, notification: Notification) -> None:
        try:
            await self._activity(DevelopmentActivities.send_notification, notification)
        except ActivityError as e:
            self._log(f"Notification '{notification.subject}' not delivered: {_cause(e)}", warning=True)

    def _log(self, message: str, warning: bool = False) -> None:
        log = workflow.logger.warning if warning else workflow.logger.info
        log(f"[{self._run.run_id}] {message}")
