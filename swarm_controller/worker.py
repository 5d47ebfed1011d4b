"""
Swarm Worker

Wires the controller's components together and keeps a worker alive:
- connects to Temporal and builds the state store, registries and
  activities from settings
- polls the task queue for orchestrator and self-heal workflow tasks and
  their activities
- publishes a heartbeat every 30 seconds
- makes sure the single self-heal loop is running

Stopped with SIGTERM/SIGINT: heartbeats stop, pending history writes are
flushed, the Temporal worker shuts down (unfinished workflows are picked
up by any other worker on the queue) and the state store is closed.
"""

import asyncio
import logging
import os
import signal
import socket
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import psutil
from temporalio.client import Client
from temporalio.contrib.pydantic import pydantic_data_converter
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.worker import Worker

from . import __version__
from .activities import DevelopmentActivities
from .config import SwarmSettings, configure_logging
from .errors import SwarmError
from .liveness import HeartbeatHistoryStore, LivenessRegistry, WorkerHealth, WorkerStatus
from .llm import LLMClient
from .models import SELF_HEAL_RUN_ID
from .notification_engine import NotificationEngine, create_notification_engine
from .orchestrator import DevelopFeatureWorkflow
from .rollback import RollbackController
from .scm_providers import SCMConfig, SCMProvider, create_scm_provider
from .self_heal import SelfHealActivities, SelfHealCheckpoint, SelfHealWorkflow
from .shared_state import StateStore, create_state_store
from .supervisor import HealthSupervisor
from .system_status import check_auth_status
from .worktree_manager import WorktreeManager

logger = logging.getLogger("worker")

AUTH_REFRESH_SECONDS = 5 * 60


@dataclass
class SwarmServices:
    """Everything a worker or the API needs, built once per process."""
    settings: SwarmSettings
    store: StateStore
    client: Optional[Client]
    liveness: LivenessRegistry
    notifications: NotificationEngine
    rollback: RollbackController
    worktrees: WorktreeManager
    supervisor: HealthSupervisor
    activities: DevelopmentActivities
    self_heal_activities: SelfHealActivities

    def attach_client(self, client: Client) -> None:
        self.client = client
        self.rollback.client = client
        self.supervisor.client = client


async def connect_client(settings: SwarmSettings) -> Client:
    logger.info(f"Connecting to Temporal at {settings.temporal_address} (namespace {settings.temporal_namespace})")
    return await Client.connect(
        settings.temporal_address,
        namespace=settings.temporal_namespace,
        data_converter=pydantic_data_converter,
    )


def build_scm_provider() -> Optional[SCMProvider]:
    """SCM provider from the environment; None when no token is configured."""
    if not os.getenv("SCM_TOKEN"):
        logger.warning("SCM_TOKEN not set, pull requests will not be opened or merged")
        return None
    return create_scm_provider(SCMConfig.from_env())


def build_services(
    settings: SwarmSettings,
    client: Optional[Client] = None,
    store: Optional[StateStore] = None,
    scm: Optional[SCMProvider] = None,
    llm: Optional[LLMClient] = None,
    notifications: Optional[NotificationEngine] = None,
) -> SwarmServices:
    store = store or create_state_store(settings.state_backend, settings.redis_url)
    liveness = LivenessRegistry(
        store,
        history=HeartbeatHistoryStore(settings.heartbeat_history_file),
        configured_workers=settings.worker_count,
        ttl_seconds=settings.heartbeat_ttl_seconds,
    )
    notifications = notifications or create_notification_engine(settings)
    rollback = RollbackController(
        settings.repo_path,
        store,
        client=client,
        task_queue=settings.task_queue,
        run_options=settings.run_options(),
        chain_ttl_seconds=settings.fix_chain_ttl_seconds,
        loop_threshold=settings.fix_loop_threshold,
    )
    worktrees = WorktreeManager(
        settings.repo_path,
        worktree_dir=settings.worktree_dir,
        base_branch=settings.base_branch,
        retention_seconds=settings.worktree_retention_days * 24 * 60 * 60,
    )
    supervisor = HealthSupervisor(
        store,
        client,
        liveness=liveness,
        worktrees=worktrees,
        stuck_run_threshold_seconds=settings.stuck_run_threshold_seconds,
        cleanup_max_age_days=settings.cleanup_max_age_days,
        cli_check="gemini" if settings.check_gemini_cli else None,
        loop_threshold=settings.fix_loop_threshold,
    )
    activities = DevelopmentActivities(
        settings,
        llm=llm or LLMClient(settings.llm_provider, settings.llm_cli, settings.llm_timeout_seconds),
        worktrees=worktrees,
        rollback=rollback,
        notifications=notifications,
        scm=scm,
    )
    return SwarmServices(
        settings=settings,
        store=store,
        client=client,
        liveness=liveness,
        notifications=notifications,
        rollback=rollback,
        worktrees=worktrees,
        supervisor=supervisor,
        activities=activities,
        self_heal_activities=SelfHealActivities(supervisor, notifications),
    )


def create_temporal_worker(services: SwarmServices) -> Worker:
    """Temporal worker for both workflow types and every activity they call."""
    development = services.activities
    self_heal = services.self_heal_activities
    return Worker(
        services.client,
        task_queue=services.settings.task_queue,
        workflows=[DevelopFeatureWorkflow, SelfHealWorkflow],
        activities=[
            development.plan_task,
            development.implement_changes,
            development.review_changes,
            development.deploy_changes,
            development.verify_deployment,
            development.send_notification,
            development.rollback_commit,
            development.create_fix_task,
            development.check_fix_task_loop,
            self_heal.perform_health_check,
            self_heal.send_health_alert,
            self_heal.run_cleanup,
            self_heal.prune_worktrees,
        ],
        max_concurrent_activities=services.settings.max_concurrent_activities,
        max_concurrent_workflow_tasks=services.settings.max_concurrent_runs,
    )


def host_metadata(active_runs: int) -> Dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "version": __version__,
        "cpu_percent": psutil.cpu_percent(interval=None),
        "memory_percent": memory.percent,
        "active_runs": active_runs,
    }


class SwarmWorker:
    def __init__(
        self,
        services: SwarmServices,
        auth_check: Callable[[], Awaitable[Dict[str, bool]]] = check_auth_status,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.services = services
        self.settings = services.settings
        self._auth_check = auth_check
        self._clock = clock
        self._auth_status: Dict[str, bool] = {}
        self._auth_checked_at: Optional[datetime] = None
        self._running = False
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._temporal_worker: Optional[Worker] = None
        self._temporal_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker already running")
            return
        self._running = True
        logger.info(f"Starting {self.settings.worker_id} ({self.services.activities.describe()})")

        if self.services.client is None:
            self.services.attach_client(await connect_client(self.settings))
        self._temporal_worker = create_temporal_worker(self.services)
        self._temporal_task = asyncio.create_task(self._temporal_worker.run())

        await self.ensure_self_heal()
        await self.publish_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Worker {self.settings.worker_id} polling task queue {self.settings.task_queue}")

    async def stop(self) -> None:
        self._running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
        if self._temporal_worker:
            await self._temporal_worker.shutdown()
            await self._temporal_task
        await self.services.liveness.flush_history()
        await self.services.store.close()
        logger.info(f"Worker {self.settings.worker_id} stopped")

    async def ensure_self_heal(self) -> bool:
        """Start the self-heal loop unless it is already running. True if started here."""
        checkpoint = SelfHealCheckpoint(
            check_interval_seconds=self.settings.check_interval_seconds,
            max_iterations_before_reset=self.settings.max_iterations_before_reset,
            cleanup_interval_seconds=self.settings.cleanup_interval_seconds,
        )
        try:
            await self.services.client.start_workflow(
                SelfHealWorkflow.run,
                checkpoint,
                id=SELF_HEAL_RUN_ID,
                task_queue=self.settings.task_queue,
            )
        except WorkflowAlreadyStartedError:
            logger.info("Self-heal loop already running")
            return False
        logger.info("Started self-heal loop")
        return True

    async def publish_heartbeat(self) -> WorkerHealth:
        auth_status = await self._current_auth_status()
        active = self.services.activities.active_task_ids
        status = WorkerStatus.HEALTHY
        if auth_status.get(self.settings.llm_provider) is False:
            status = WorkerStatus.DEGRADED

        return await self.services.liveness.publish_heartbeat(
            self.settings.worker_id,
            status=status,
            current_task=active[0] if active else None,
            llm_provider=self.settings.llm_provider,
            auth_status=auth_status,
            metadata=host_metadata(len(active)),
        )

    async def _current_auth_status(self) -> Dict[str, bool]:
        now = self._clock()
        if self._auth_checked_at is None or now - self._auth_checked_at >= timedelta(seconds=AUTH_REFRESH_SECONDS):
            try:
                self._auth_status = await self._auth_check()
            except Exception as e:
                logger.warning(f"Auth status check failed: {e}")
            self._auth_checked_at = now
        return dict(self._auth_status)

    async def _heartbeat_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.settings.heartbeat_interval_seconds)
                await self.publish_heartbeat()
            except asyncio.CancelledError:
                break
            except Exception as e:
                # A missed beat is tolerated until the TTL runs out
                logger.error(f"Heartbeat failed: {e}")


async def serve(settings: SwarmSettings) -> None:
    services = build_services(settings, scm=build_scm_provider())
    worker = SwarmWorker(services)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    await worker.start()
    await stop_event.wait()
    logger.info("Shutdown signal received")
    await worker.stop()


def main() -> None:
    try:
        settings = SwarmSettings.from_env()
    except SwarmError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e.message}")
        raise SystemExit(2)
    configure_logging(settings.log_level)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
