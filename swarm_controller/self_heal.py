"""
Self-Heal Loop

A single perpetual Temporal workflow (id self-heal-monitor) that, once
per interval:
- asks the Health Supervisor for a snapshot
- alerts on critical escalated snapshots (high priority) and degraded ones
- runs maintenance when the last cleanup is at least 24 hours old
- waits for the next interval or a stop_monitoring signal

After max_iterations_before_reset iterations the workflow continues as
new, carrying its checkpoint so history stays bounded.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from temporalio import activity, workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    from .models import SELF_HEAL_WORKFLOW
    from .notification_engine import NotificationEngine, NotificationTemplates
    from .supervisor import HealthSnapshot, HealthStatus, HealthSupervisor

CLEANUP_INTERVAL_SECONDS = 24 * 60 * 60
ACTIVITY_TIMEOUT = timedelta(minutes=5)
ACTIVITY_RETRY_POLICY = RetryPolicy(maximum_attempts=2, initial_interval=timedelta(seconds=10))


@dataclass
class SelfHealCheckpoint:
    check_interval_seconds: float = 60.0
    max_iterations_before_reset: int = 100
    iteration_count: int = 0
    last_cleanup_time: Optional[datetime] = None
    cleanup_interval_seconds: float = CLEANUP_INTERVAL_SECONDS

    def cleanup_due(self, now: datetime) -> bool:
        if self.last_cleanup_time is None:
            return True
        return now - self.last_cleanup_time >= timedelta(seconds=self.cleanup_interval_seconds)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_interval_seconds": self.check_interval_seconds,
            "max_iterations_before_reset": self.max_iterations_before_reset,
            "iteration_count": self.iteration_count,
            "last_cleanup_time": self.last_cleanup_time.isoformat() if self.last_cleanup_time else None,
            "cleanup_interval_seconds": self.cleanup_interval_seconds,
        }


def needs_alert(snapshot: HealthSnapshot) -> bool:
    if snapshot.status == HealthStatus.CRITICAL:
        return snapshot.escalated
    return snapshot.status == HealthStatus.DEGRADED


class SelfHealActivities:
    """Activities the self-heal loop runs on the worker."""

    def __init__(self, supervisor: HealthSupervisor, notifications: NotificationEngine):
        self._supervisor = supervisor
        self._notifications = notifications

    @activity.defn
    async def perform_health_check(self) -> HealthSnapshot:
        return await self._supervisor.perform_health_check()

    @activity.defn
    async def send_health_alert(self, snapshot: HealthSnapshot) -> bool:
        notification = NotificationTemplates.health(snapshot.status.value, snapshot.actions, snapshot.escalated)
        return await self._notifications.send(notification)

    @activity.defn
    async def run_cleanup(self) -> Dict[str, int]:
        return await self._supervisor.run_cleanup()

    @activity.defn
    async def prune_worktrees(self) -> Dict[str, int]:
        return await self._supervisor.prune_worktrees()


@workflow.defn(name=SELF_HEAL_WORKFLOW)
class SelfHealWorkflow:
    def __init__(self) -> None:
        self._stop_requested = False

    @workflow.signal
    def stop_monitoring(self) -> None:
        self._stop_requested = True

    @workflow.run
    async def run(self, checkpoint: SelfHealCheckpoint) -> Dict[str, Any]:
        while True:
            try:
                snapshot = await self._activity(SelfHealActivities.perform_health_check)
            except ActivityError as e:
                snapshot = HealthSnapshot(
                    status=HealthStatus.CRITICAL,
                    actions=[f"Health check did not complete: {e.cause or e}"],
                    escalated=True,
                    checked_at=workflow.now(),
                )

            if needs_alert(snapshot):
                try:
                    await self._activity(SelfHealActivities.send_health_alert, snapshot)
                except ActivityError as e:
                    workflow.logger.error(f"Health alert not delivered: {e.cause or e}")

            now = workflow.now()
            if checkpoint.cleanup_due(now):
                try:
                    cleanup = await self._activity(SelfHealActivities.run_cleanup)
                    pruned = await self._activity(SelfHealActivities.prune_worktrees)
                    checkpoint.last_cleanup_time = now
                    workflow.logger.info(f"Maintenance done: {cleanup}, worktrees {pruned}")
                except ActivityError as e:
                    workflow.logger.error(f"Cleanup failed: {e.cause or e}")

            if self._stop_requested:
                break
            try:
                await workflow.wait_condition(
                    lambda: self._stop_requested,
                    timeout=timedelta(seconds=checkpoint.check_interval_seconds),
                )
                break
            except asyncio.TimeoutError:
                pass

            checkpoint.iteration_count += 1
            if checkpoint.iteration_count >= checkpoint.max_iterations_before_reset:
                checkpoint.iteration_count = 0
                workflow.continue_as_new(checkpoint)

        workflow.logger.info(f"Self-heal loop stopped after {checkpoint.iteration_count} iteration(s)")
        result = checkpoint.to_dict()
        result["stopped"] = True
        return result

    async def _activity(self, method, *args) -> Any:
        return await workflow.execute_activity_method(
            method,
            args=list(args),
            start_to_close_timeout=ACTIVITY_TIMEOUT,
            retry_policy=ACTIVITY_RETRY_POLICY,
        )
