"""
Self-Heal Loop Tests

Drives SelfHealWorkflow on the time-skipping Temporal test server with the
real SelfHealActivities over a scripted supervisor. The loop is stopped by
sending stop_monitoring from inside a health check.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
from temporalio.client import Client
from temporalio.worker import Worker

from swarm_controller.models import SELF_HEAL_RUN_ID
from swarm_controller.notification_engine import (
    Notification,
    NotificationEngine,
    NotificationPriority,
    NotificationTemplates,
    NotificationType,
)
from swarm_controller.self_heal import SelfHealActivities, SelfHealCheckpoint, SelfHealWorkflow, needs_alert
from swarm_controller.supervisor import HealthSnapshot, HealthStatus


class ScriptedSupervisor:
    """Health checks return `snapshot`; stop_monitoring is sent on check `stop_at`."""

    def __init__(self, client: Client, stop_at: int = 1, snapshot: Optional[HealthSnapshot] = None):
        self.client = client
        self.stop_at = stop_at
        self.snapshot = snapshot or HealthSnapshot(status=HealthStatus.HEALTHY, actions=["Checked Temporal"])
        self.fail_checks = False
        self.checks = 0
        self.cleanups = 0
        self.prunes = 0

    async def perform_health_check(self) -> HealthSnapshot:
        self.checks += 1
        if self.checks == self.stop_at:
            await self.client.get_workflow_handle(SELF_HEAL_RUN_ID).signal(SelfHealWorkflow.stop_monitoring)
        if self.fail_checks:
            raise RuntimeError("temporal check crashed")
        return self.snapshot

    async def run_cleanup(self) -> Dict[str, int]:
        self.cleanups += 1
        return {"worker_records_removed": 0}

    async def prune_worktrees(self) -> Dict[str, int]:
        self.prunes += 1
        return {"pruned": 0}


class RecordingChannel:
    def __init__(self):
        self.sent: List[Notification] = []

    async def __call__(self, notification: Notification) -> bool:
        self.sent.append(notification)
        return True


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def notifications(channel):
    engine = NotificationEngine()
    engine.register_channel("recording", channel)
    return engine


async def run_loop(client: Client, supervisor, notifications: NotificationEngine, **checkpoint_fields) -> dict:
    task_queue = f"self-heal-tests-{uuid.uuid4()}"
    activities = SelfHealActivities(supervisor, notifications)
    checkpoint_fields.setdefault("check_interval_seconds", 60)
    async with Worker(
        client,
        task_queue=task_queue,
        workflows=[SelfHealWorkflow],
        activities=[
            activities.perform_health_check,
            activities.send_health_alert,
            activities.run_cleanup,
            activities.prune_worktrees,
        ],
    ):
        handle = await client.start_workflow(
            SelfHealWorkflow.run,
            SelfHealCheckpoint(**checkpoint_fields),
            id=SELF_HEAL_RUN_ID,
            task_queue=task_queue,
        )
        return await handle.result()


# -----------------------------------------------------------------------------
# Checkpoint
# -----------------------------------------------------------------------------
class TestSelfHealCheckpoint:
    """Tests for the carried loop state."""

    def test_cleanup_due_without_previous_cleanup(self):
        assert SelfHealCheckpoint().cleanup_due(datetime(2026, 3, 2, 9, 0))

    def test_cleanup_not_due_within_a_day(self):
        now = datetime(2026, 3, 2, 9, 0)
        checkpoint = SelfHealCheckpoint(last_cleanup_time=now - timedelta(hours=23))
        assert not checkpoint.cleanup_due(now)

    def test_cleanup_due_after_a_day(self):
        now = datetime(2026, 3, 2, 9, 0)
        checkpoint = SelfHealCheckpoint(last_cleanup_time=now - timedelta(hours=24))
        assert checkpoint.cleanup_due(now)

    def test_custom_cleanup_interval(self):
        now = datetime(2026, 3, 2, 9, 0)
        checkpoint = SelfHealCheckpoint(last_cleanup_time=now - timedelta(hours=2), cleanup_interval_seconds=3600)
        assert checkpoint.cleanup_due(now)

    def test_to_dict(self):
        checkpoint = SelfHealCheckpoint(iteration_count=7, last_cleanup_time=datetime(2026, 3, 1, 8, 30))
        data = checkpoint.to_dict()
        assert data["iteration_count"] == 7
        assert data["last_cleanup_time"] == "2026-03-01T08:30:00"


# -----------------------------------------------------------------------------
# Alerts
# -----------------------------------------------------------------------------
class TestHealthAlerts:
    """Tests for which snapshots alert and how."""

    @pytest.mark.parametrize("status,escalated,expected", [
        (HealthStatus.HEALTHY, False, False),
        (HealthStatus.DEGRADED, False, True),
        (HealthStatus.CRITICAL, True, True),
        (HealthStatus.CRITICAL, False, False),
    ])
    def test_needs_alert(self, status, escalated, expected):
        assert needs_alert(HealthSnapshot(status=status, escalated=escalated)) is expected

    @pytest.mark.asyncio
    async def test_alert_uses_health_template(self, notifications, channel):
        activities = SelfHealActivities(supervisor=None, notifications=notifications)
        snapshot = HealthSnapshot(status=HealthStatus.CRITICAL, actions=["Temporal unreachable: boom"], escalated=True)

        assert await activities.send_health_alert(snapshot) is True

        expected = NotificationTemplates.health("critical", ["Temporal unreachable: boom"], True)
        sent = channel.sent[0]
        assert (sent.subject, sent.body, sent.priority) == (expected.subject, expected.body, expected.priority)
        assert sent.notification_type == NotificationType.HEALTH_CRITICAL


# -----------------------------------------------------------------------------
# Loop behaviour
# -----------------------------------------------------------------------------
class TestSelfHealLoop:
    """Tests for one or more loop iterations."""

    @pytest.mark.asyncio
    async def test_stop_signal_ends_loop(self, workflow_env, notifications):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1)
        result = await run_loop(workflow_env.client, supervisor, notifications)

        assert result["stopped"] is True
        assert result["iteration_count"] == 0
        assert supervisor.checks == 1

    @pytest.mark.asyncio
    async def test_cleanup_skipped_when_recent(self, workflow_env, notifications):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1)
        recent = datetime.now(timezone.utc) - timedelta(hours=1)
        await run_loop(workflow_env.client, supervisor, notifications, last_cleanup_time=recent)

        assert supervisor.cleanups == 0
        assert supervisor.prunes == 0

    @pytest.mark.asyncio
    async def test_cleanup_runs_when_a_day_old(self, workflow_env, notifications):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1)
        stale = datetime.now(timezone.utc) - timedelta(hours=25)
        result = await run_loop(workflow_env.client, supervisor, notifications, last_cleanup_time=stale)

        assert supervisor.cleanups == 1
        assert supervisor.prunes == 1
        assert datetime.fromisoformat(result["last_cleanup_time"]) > stale

    @pytest.mark.asyncio
    async def test_healthy_snapshot_sends_nothing(self, workflow_env, notifications, channel):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1)
        await run_loop(workflow_env.client, supervisor, notifications)

        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_critical_snapshot_is_escalated(self, workflow_env, notifications, channel):
        snapshot = HealthSnapshot(
            status=HealthStatus.CRITICAL, actions=["Temporal unreachable: boom"], escalated=True
        )
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1, snapshot=snapshot)
        await run_loop(workflow_env.client, supervisor, notifications)

        assert len(channel.sent) == 1
        alert = channel.sent[0]
        assert alert.priority == NotificationPriority.HIGH
        assert alert.subject == "Swarm health CRITICAL (escalated)"
        assert "Temporal unreachable: boom" in alert.body

    @pytest.mark.asyncio
    async def test_degraded_snapshot_is_reported_at_normal_priority(self, workflow_env, notifications, channel):
        snapshot = HealthSnapshot(status=HealthStatus.DEGRADED, actions=["State store unreachable"])
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1, snapshot=snapshot)
        await run_loop(workflow_env.client, supervisor, notifications)

        assert [n.priority for n in channel.sent] == [NotificationPriority.NORMAL]
        assert channel.sent[0].notification_type == NotificationType.HEALTH_DEGRADED

    @pytest.mark.asyncio
    async def test_failed_health_check_counts_as_critical(self, workflow_env, notifications, channel):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=1)
        supervisor.fail_checks = True
        result = await run_loop(workflow_env.client, supervisor, notifications)

        assert result["stopped"] is True
        assert supervisor.checks == 2
        assert channel.sent[0].priority == NotificationPriority.HIGH
        assert "Health check did not complete" in channel.sent[0].body

    @pytest.mark.asyncio
    async def test_iterations_accumulate_until_stopped(self, workflow_env, notifications):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=3)
        result = await run_loop(workflow_env.client, supervisor, notifications)

        assert result["iteration_count"] == 2
        assert supervisor.checks == 3
        assert supervisor.cleanups == 1

    @pytest.mark.asyncio
    async def test_continues_as_new_after_max_iterations(self, workflow_env, notifications):
        supervisor = ScriptedSupervisor(workflow_env.client, stop_at=3)
        result = await run_loop(workflow_env.client, supervisor, notifications, max_iterations_before_reset=2)

        assert result["stopped"] is True
        assert result["iteration_count"] == 0
        assert supervisor.checks == 3
        # The cleanup time survives the restart, so maintenance ran once
        assert supervisor.cleanups == 1
        assert result["last_cleanup_time"] is not None
