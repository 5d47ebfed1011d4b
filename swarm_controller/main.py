"""
Swarm Controller - FastAPI Application

Control surface over the Temporal cluster:
- Submit tasks as orchestrator workflows
- Inspect runs and their current stage
- Approve or cancel runs
- Worker liveness and swarm health
- Kill switch (pause/resume) and self-heal stop

The API process also hosts a worker on the task queue, so it can run the
workflows it submits; any other worker on the queue can pick them up too.
"""

import logging
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from temporalio.client import (
    Client,
    WorkflowExecution,
    WorkflowExecutionDescription,
    WorkflowExecutionStatus,
    WorkflowHandle,
)
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from . import __version__
from .config import SwarmSettings, configure_logging
from .models import DEVELOP_WORKFLOW, SELF_HEAL_RUN_ID, DevelopInput, Task, TaskPriority, TaskType, develop_run_id
from .orchestrator import DevelopFeatureWorkflow
from .self_heal import SelfHealWorkflow
from .shared_state import SWARM_PAUSED_KEY
from .worker import SwarmServices, SwarmWorker, build_scm_provider, build_services, connect_client

logger = logging.getLogger("swarm_controller")

RUN_LIST_MAX = 200


class RunStatus(str, Enum):
    """Temporal execution status as exposed by the API."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"
    TERMINATED = "terminated"
    CONTINUED_AS_NEW = "continued_as_new"
    TIMED_OUT = "timed_out"

    @property
    def visibility_name(self) -> str:
        return "".join(part.capitalize() for part in self.value.split("_"))

    @classmethod
    def from_execution(cls, status: Optional[WorkflowExecutionStatus]) -> Optional["RunStatus"]:
        return cls[status.name] if status is not None else None


# -----------------------------------------------------------------------------
# Request/Response Models
# -----------------------------------------------------------------------------
class TaskSubmitRequest(BaseModel):
    id: Optional[str] = Field(None, description="Task id; generated when omitted")
    title: str = Field(..., min_length=1, max_length=200)
    context: str = ""
    acceptance_criteria: List[str] = Field(default_factory=list)
    files_to_modify: List[str] = Field(default_factory=list)
    priority: TaskPriority = TaskPriority.MEDIUM
    task_type: TaskType = TaskType.FEATURE
    project_id: Optional[str] = None
    skip_approval: bool = False
    notify_on_complete: bool = True


class TaskSubmitResponse(BaseModel):
    run_id: str
    task_id: str
    status: str


class SignalResponse(BaseModel):
    run_id: str
    signal: str
    accepted: bool


class SwarmStateResponse(BaseModel):
    paused: bool


def _execution_view(execution: WorkflowExecution) -> Dict[str, Any]:
    status = RunStatus.from_execution(execution.status)
    return {
        "run_id": execution.id,
        "workflow_type": execution.workflow_type,
        "execution_status": status.value if status else None,
        "started_at": execution.start_time.isoformat() if execution.start_time else None,
        "closed_at": execution.close_time.isoformat() if execution.close_time else None,
    }


def create_app(
    settings: Optional[SwarmSettings] = None,
    services: Optional[SwarmServices] = None,
    run_worker: bool = True,
) -> FastAPI:
    """Build the API. `services` are built from settings at startup when not given."""
    app = FastAPI(
        title="AI Swarm Controller",
        description="Task orchestration and resilience core",
        version=__version__,
    )
    app.state.services = services
    app.state.worker = None

    def get_services() -> SwarmServices:
        if app.state.services is None:
            raise HTTPException(status_code=503, detail="Controller is starting")
        return app.state.services

    def get_client() -> Client:
        client = get_services().client
        if client is None:
            raise HTTPException(status_code=503, detail="Not connected to Temporal")
        return client

    async def describe(run_id: str) -> Tuple[WorkflowHandle, WorkflowExecutionDescription]:
        handle = get_client().get_workflow_handle(run_id)
        try:
            return handle, await handle.describe()
        except RPCError as e:
            if e.status == RPCStatusCode.NOT_FOUND:
                raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
            raise

    async def send_signal(run_id: str, signal) -> SignalResponse:
        handle, description = await describe(run_id)
        if description.status != WorkflowExecutionStatus.RUNNING:
            status = RunStatus.from_execution(description.status)
            raise HTTPException(status_code=409, detail=f"Run {run_id} is not running ({status.value})")
        await handle.signal(signal)
        name = signal if isinstance(signal, str) else signal.__name__
        logger.info(f"Signal {name} sent to {run_id}")
        return SignalResponse(run_id=run_id, signal=name, accepted=True)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    @app.on_event("startup")
    async def startup_event():
        if app.state.services is None:
            current = settings or SwarmSettings.from_env()
            app.state.services = build_services(
                current, client=await connect_client(current), scm=build_scm_provider()
            )
        if run_worker:
            app.state.worker = SwarmWorker(app.state.services)
            await app.state.worker.start()
        logger.info("Swarm Controller ready")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Swarm Controller shutting down...")
        if app.state.worker is not None:
            await app.state.worker.stop()
        elif app.state.services is not None:
            await app.state.services.store.close()

    # -------------------------------------------------------------------------
    # Tasks and runs
    # -------------------------------------------------------------------------
    @app.post("/tasks", response_model=TaskSubmitResponse, status_code=201)
    async def submit_task(request: TaskSubmitRequest):
        """Submit a task; it runs as develop-<task id>."""
        services = get_services()
        task = Task(
            id=request.id or f"task-{uuid.uuid4().hex[:8]}",
            title=request.title,
            context=request.context,
            acceptance_criteria=tuple(request.acceptance_criteria),
            files_to_modify=tuple(request.files_to_modify),
            priority=request.priority,
            task_type=request.task_type,
            project_id=request.project_id,
        )
        develop = DevelopInput(
            task=task,
            skip_approval=request.skip_approval,
            notify_on_complete=request.notify_on_complete,
            options=services.settings.run_options(),
        )
        run_id = develop_run_id(task.id)
        try:
            await get_client().start_workflow(
                DevelopFeatureWorkflow.run,
                develop,
                id=run_id,
                task_queue=services.settings.task_queue,
            )
        except WorkflowAlreadyStartedError:
            raise HTTPException(status_code=409, detail=f"Run {run_id} is already running")
        logger.info(f"Task {task.id} submitted as {run_id}")
        return TaskSubmitResponse(run_id=run_id, task_id=task.id, status=RunStatus.RUNNING.value)

    @app.get("/runs")
    async def list_runs(status: Optional[RunStatus] = None, limit: int = 50):
        query = f'WorkflowType="{DEVELOP_WORKFLOW}"'
        if status is not None:
            query += f' AND ExecutionStatus="{status.visibility_name}"'
        limit = max(1, min(limit, RUN_LIST_MAX))
        runs = []
        async for execution in get_client().list_workflows(query=query):
            runs.append(_execution_view(execution))
            if len(runs) >= limit:
                break
        return {"runs": runs, "count": len(runs)}

    @app.get("/runs/{run_id}")
    async def get_run(run_id: str):
        """Execution metadata plus the workflow's own view of the run."""
        handle, description = await describe(run_id)
        view = _execution_view(description)
        if description.status == WorkflowExecutionStatus.RUNNING:
            if description.workflow_type == DEVELOP_WORKFLOW:
                view.update(await handle.query(DevelopFeatureWorkflow.get_status))
        elif description.status == WorkflowExecutionStatus.COMPLETED:
            result = await handle.result()
            if isinstance(result, dict):
                view.update(result)
        return view

    @app.post("/runs/{run_id}/approve", response_model=SignalResponse)
    async def approve_run(run_id: str):
        """Approval outside the awaiting_approval stage is accepted and ignored by the run."""
        return await send_signal(run_id, DevelopFeatureWorkflow.approve)

    @app.post("/runs/{run_id}/cancel", response_model=SignalResponse)
    async def cancel_run(run_id: str):
        return await send_signal(run_id, DevelopFeatureWorkflow.cancel)

    # -------------------------------------------------------------------------
    # Workers and health
    # -------------------------------------------------------------------------
    @app.get("/workers")
    async def list_workers():
        liveness = get_services().liveness
        workers = await liveness.get_all_worker_health()
        return {
            "workers": [w.to_dict() for w in workers],
            "summary": await liveness.get_worker_summary(),
        }

    @app.get("/health")
    async def health_check():
        """Fresh supervisor snapshot."""
        snapshot = await get_services().supervisor.perform_health_check()
        data = snapshot.to_dict()
        data["version"] = __version__
        return data

    # -------------------------------------------------------------------------
    # Kill switch and self-heal
    # -------------------------------------------------------------------------
    @app.post("/swarm/pause", response_model=SwarmStateResponse)
    async def pause_swarm():
        await get_services().store.set(SWARM_PAUSED_KEY, "true")
        logger.warning("Swarm paused")
        return SwarmStateResponse(paused=True)

    @app.post("/swarm/resume", response_model=SwarmStateResponse)
    async def resume_swarm():
        await get_services().store.delete(SWARM_PAUSED_KEY)
        logger.info("Swarm resumed")
        return SwarmStateResponse(paused=False)

    @app.post("/self-heal/stop", response_model=SignalResponse)
    async def stop_self_heal():
        return await send_signal(SELF_HEAL_RUN_ID, SelfHealWorkflow.stop_monitoring)

    return app


def run() -> None:
    import uvicorn

    settings = SwarmSettings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run()
