"""
Controller API Tests

Runs the FastAPI app over an in-memory store and a mocked Temporal client;
no worker is started. The mock records what the API asks Temporal to do.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from temporalio.client import WorkflowExecutionStatus
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from swarm_controller import __version__
from swarm_controller.config import SwarmSettings
from swarm_controller.main import create_app
from swarm_controller.models import DEVELOP_WORKFLOW, SELF_HEAL_RUN_ID, SELF_HEAL_WORKFLOW, DevelopInput
from swarm_controller.orchestrator import DevelopFeatureWorkflow
from swarm_controller.self_heal import SelfHealWorkflow
from swarm_controller.shared_state import SWARM_PAUSED_KEY, InMemoryStateStore
from swarm_controller.worker import build_services

from .helpers import async_iter

STARTED = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def execution(run_id: str = "develop-T1", status=WorkflowExecutionStatus.RUNNING, workflow_type=DEVELOP_WORKFLOW):
    return MagicMock(id=run_id, workflow_type=workflow_type, status=status, start_time=STARTED, close_time=None)


def not_found():
    return RPCError("workflow not found", RPCStatusCode.NOT_FOUND, b"")


@pytest.fixture
def handle():
    handle = MagicMock()
    handle.describe = AsyncMock(return_value=execution())
    handle.signal = AsyncMock()
    handle.query = AsyncMock(return_value={"stage": "awaiting_approval", "task_id": "T1"})
    handle.result = AsyncMock(return_value={"stage": "completed", "pr_number": 7})
    return handle


@pytest.fixture
def temporal(handle):
    client = MagicMock()
    client.start_workflow = AsyncMock()
    client.get_workflow_handle = MagicMock(return_value=handle)
    client.list_workflows = MagicMock(side_effect=lambda query=None, **kwargs: async_iter([]))
    return client


@pytest.fixture
def services(tmp_path, temporal):
    settings = SwarmSettings(
        state_backend="memory",
        task_queue="api-tests",
        data_dir=tmp_path / "data",
        notification_log_dir=tmp_path / "notifications",
        repo_path=tmp_path,
        worktree_dir=tmp_path / "worktrees",
        worker_count=2,
    )
    return build_services(settings, client=temporal, store=InMemoryStateStore(), llm=MagicMock())


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services, run_worker=False)) as test_client:
        yield test_client


# -----------------------------------------------------------------------------
# Task submission
# -----------------------------------------------------------------------------
class TestSubmitTask:
    """Tests for POST /tasks."""

    def test_submit_starts_develop_workflow(self, client, services, temporal):
        response = client.post("/tasks", json={"id": "T1", "title": "Add order history"})

        assert response.status_code == 201
        assert response.json() == {"run_id": "develop-T1", "task_id": "T1", "status": "running"}

        call = temporal.start_workflow.call_args
        assert call.args[0] == DevelopFeatureWorkflow.run
        develop = call.args[1]
        assert isinstance(develop, DevelopInput)
        assert develop.task.title == "Add order history"
        assert develop.options == services.settings.run_options()
        assert call.kwargs == {"id": "develop-T1", "task_queue": "api-tests"}

    def test_generated_task_id(self, client):
        body = client.post("/tasks", json={"title": "Add order history"}).json()
        assert body["task_id"].startswith("task-")
        assert body["run_id"] == f"develop-{body['task_id']}"

    def test_duplicate_run_is_conflict(self, client, temporal):
        temporal.start_workflow.side_effect = WorkflowAlreadyStartedError("develop-T1", DEVELOP_WORKFLOW)

        response = client.post("/tasks", json={"id": "T1", "title": "Again"})

        assert response.status_code == 409
        assert response.json()["detail"] == "Run develop-T1 is already running"

    def test_invalid_request(self, client, temporal):
        assert client.post("/tasks", json={"title": ""}).status_code == 422
        temporal.start_workflow.assert_not_called()

    def test_no_temporal_client(self, client, services):
        services.client = None
        assert client.post("/tasks", json={"id": "T1", "title": "Add order history"}).status_code == 503


# -----------------------------------------------------------------------------
# Runs
# -----------------------------------------------------------------------------
class TestRuns:
    """Tests for run inspection and signals."""

    def test_running_run_includes_workflow_status(self, client, handle):
        data = client.get("/runs/develop-T1").json()

        assert data["run_id"] == "develop-T1"
        assert data["execution_status"] == "running"
        assert data["stage"] == "awaiting_approval"
        assert data["started_at"] == STARTED.isoformat()
        handle.query.assert_awaited_once_with(DevelopFeatureWorkflow.get_status)
        handle.result.assert_not_awaited()

    def test_completed_run_includes_result(self, client, handle):
        handle.describe.return_value = execution(status=WorkflowExecutionStatus.COMPLETED)

        data = client.get("/runs/develop-T1").json()

        assert data["execution_status"] == "completed"
        assert data["pr_number"] == 7
        handle.query.assert_not_awaited()

    def test_unknown_run(self, client, handle):
        handle.describe.side_effect = not_found()

        assert client.get("/runs/develop-nope").status_code == 404
        assert client.post("/runs/develop-nope/approve").status_code == 404
        assert client.post("/runs/develop-nope/cancel").status_code == 404
        handle.signal.assert_not_awaited()

    def test_approve_is_forwarded(self, client, temporal, handle):
        response = client.post("/runs/develop-T1/approve")

        assert response.status_code == 200
        assert response.json() == {"run_id": "develop-T1", "signal": "approve", "accepted": True}
        temporal.get_workflow_handle.assert_called_with("develop-T1")
        handle.signal.assert_awaited_once_with(DevelopFeatureWorkflow.approve)

    def test_cancel_is_forwarded(self, client, handle):
        response = client.post("/runs/develop-T1/cancel")

        assert response.json()["signal"] == "cancel"
        handle.signal.assert_awaited_once_with(DevelopFeatureWorkflow.cancel)

    def test_signal_to_closed_run_is_conflict(self, client, handle):
        handle.describe.return_value = execution(status=WorkflowExecutionStatus.COMPLETED)

        response = client.post("/runs/develop-T1/approve")

        assert response.status_code == 409
        assert response.json()["detail"] == "Run develop-T1 is not running (completed)"
        handle.signal.assert_not_awaited()

    def test_list_runs_by_status(self, client, temporal):
        temporal.list_workflows.side_effect = lambda query=None, **kwargs: async_iter(
            [execution("develop-T1"), execution("develop-T2")]
        )

        data = client.get("/runs", params={"status": "running"}).json()

        assert [r["run_id"] for r in data["runs"]] == ["develop-T1", "develop-T2"]
        assert data["count"] == 2
        query = temporal.list_workflows.call_args.kwargs["query"]
        assert query == f'WorkflowType="{DEVELOP_WORKFLOW}" AND ExecutionStatus="Running"'

    def test_list_runs_respects_limit(self, client, temporal):
        temporal.list_workflows.side_effect = lambda query=None, **kwargs: async_iter(
            [execution(f"develop-T{i}") for i in range(5)]
        )

        data = client.get("/runs", params={"limit": 2}).json()

        assert data["count"] == 2

    def test_continued_as_new_status_name(self, client, temporal):
        client.get("/runs", params={"status": "continued_as_new"})
        assert temporal.list_workflows.call_args.kwargs["query"].endswith('ExecutionStatus="ContinuedAsNew"')


# -----------------------------------------------------------------------------
# Workers, health and the kill switch
# -----------------------------------------------------------------------------
class TestSwarm:
    """Tests for fleet, health and control endpoints."""

    def test_workers_without_heartbeats(self, client):
        data = client.get("/workers").json()
        assert [w["status"] for w in data["workers"]] == ["offline", "offline"]
        assert data["summary"]["offline"] == 2

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__

    @pytest.mark.parametrize("path,expected", [("/swarm/pause", "true"), ("/swarm/resume", None)])
    def test_kill_switch(self, client, services, path, expected):
        assert client.post(path).status_code == 200
        assert services.store._data.get(SWARM_PAUSED_KEY, (None,))[0] == expected

    def test_paused_health_reports_pause(self, client):
        client.post("/swarm/pause")
        assert client.get("/health").json()["services"] == []

    def test_stop_self_heal(self, client, temporal, handle):
        handle.describe.return_value = execution(SELF_HEAL_RUN_ID, workflow_type=SELF_HEAL_WORKFLOW)

        assert client.post("/self-heal/stop").json()["signal"] == "stop_monitoring"
        temporal.get_workflow_handle.assert_called_with(SELF_HEAL_RUN_ID)
        handle.signal.assert_awaited_once_with(SelfHealWorkflow.stop_monitoring)

    def test_stop_self_heal_when_not_running(self, client, handle):
        handle.describe.side_effect = not_found()
        assert client.post("/self-heal/stop").status_code == 404
