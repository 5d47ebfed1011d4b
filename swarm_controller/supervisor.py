"""
Health Supervisor

One health check produces a fresh HealthSnapshot:
1. Kill switch: swarm:paused == "true" short-circuits everything
2. Temporal check: running workflows (first 50) and ones open for over an hour
3. State store check: ping latency and fix chains at loop depth
4. Optional LLM CLI check; a missing CLI is ignored

Each check fails independently. Only an unreachable Temporal service is critical
and escalated; any other unhealthy dependency makes the swarm degraded.

The supervisor also owns the maintenance jobs the self-heal loop runs:
worker history cleanup and worktree pruning.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from temporalio.client import Client

from .config import FIX_LOOP_THRESHOLD
from .git_ops import run_command
from .liveness import LivenessRegistry
from .shared_state import FIX_CHAIN_PREFIX, SWARM_PAUSED_KEY, StateStore
from .worktree_manager import WorktreeManager

logger = logging.getLogger("supervisor")

PAUSED_ACTION = "Swarm is paused - skipping health checks"
CLI_CHECK_TIMEOUT_SECONDS = 10
RUNNING_QUERY = 'ExecutionStatus="Running"'
RUNNING_SAMPLE_LIMIT = 50


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class DependencyStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class DependencyHealth:
    service: str
    status: DependencyStatus
    latency_ms: Optional[float] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "message": self.message,
        }


@dataclass
class HealthSnapshot:
    status: HealthStatus
    services: List[DependencyHealth] = field(default_factory=list)
    actions: List[str] = field(default_factory=list)
    escalated: bool = False
    checked_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "services": [s.to_dict() for s in self.services],
            "actions": list(self.actions),
            "escalated": self.escalated,
            "checked_at": self.checked_at.isoformat(),
        }


class HealthSupervisor:
    def __init__(
        self,
        store: StateStore,
        client: Optional[Client],
        liveness: Optional[LivenessRegistry] = None,
        worktrees: Optional[WorktreeManager] = None,
        stuck_run_threshold_seconds: float = 60 * 60,
        cleanup_max_age_days: int = 90,
        cli_check: Optional[str] = None,
        loop_threshold: int = FIX_LOOP_THRESHOLD,
    ):
        self._store = store
        self.client = client
        self._liveness = liveness
        self._worktrees = worktrees
        self._stuck_threshold = stuck_run_threshold_seconds
        self._cleanup_max_age_days = cleanup_max_age_days
        self._cli_check = cli_check
        self._loop_threshold = loop_threshold

    async def perform_health_check(self) -> HealthSnapshot:
        actions: List[str] = []
        try:
            if await self._is_paused():
                logger.info(PAUSED_ACTION)
                return HealthSnapshot(status=HealthStatus.HEALTHY, actions=[PAUSED_ACTION])

            services = [
                await self._check_temporal(actions),
                await self._check_state_store(actions),
            ]
            if self._cli_check:
                services.append(await self._check_cli(self._cli_check, actions))
            if self._liveness is not None:
                await self._summarize_workers(actions)

            temporal_health = services[0]
            if temporal_health.status == DependencyStatus.UNHEALTHY:
                status, escalated = HealthStatus.CRITICAL, True
            elif any(s.status == DependencyStatus.UNHEALTHY for s in services):
                status, escalated = HealthStatus.DEGRADED, False
            else:
                status, escalated = HealthStatus.HEALTHY, False

            logger.info(f"Health check: {status.value} ({'; '.join(actions)})")
            return HealthSnapshot(status=status, services=services, actions=actions, escalated=escalated)
        except Exception as e:
            logger.exception(f"Health check failed: {e}")
            actions.append(f"Health check failed: {e}")
            return HealthSnapshot(status=HealthStatus.CRITICAL, actions=actions, escalated=True)

    async def _is_paused(self) -> bool:
        try:
            return await self._store.get(SWARM_PAUSED_KEY) == "true"
        except Exception as e:
            # The state store check reports the outage
            logger.warning(f"Could not read kill switch: {e}")
            return False

    async def _check_temporal(self, actions: List[str]) -> DependencyHealth:
        if self.client is None:
            actions.append("Temporal unreachable: no client connected")
            return DependencyHealth("temporal", DependencyStatus.UNHEALTHY, message="no client connected")

        start = time.monotonic()
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stuck_threshold)
        running = stuck = 0
        try:
            async for execution in self.client.list_workflows(query=RUNNING_QUERY):
                running += 1
                started = execution.start_time
                if started.tzinfo is None:
                    started = started.replace(tzinfo=timezone.utc)
                if started < cutoff:
                    stuck += 1
                if running >= RUNNING_SAMPLE_LIMIT:
                    break
        except Exception as e:
            actions.append(f"Temporal unreachable: {e}")
            return DependencyHealth("temporal", DependencyStatus.UNHEALTHY, message=str(e))

        latency = (time.monotonic() - start) * 1000
        actions.append(f"Checked Temporal: {running} running, {stuck} stuck")
        if stuck:
            actions.append(f"Warning: {stuck} workflow(s) open for over {int(self._stuck_threshold // 60)} minutes")
        return DependencyHealth(
            "temporal",
            DependencyStatus.HEALTHY,
            latency_ms=latency,
            message=f"{running} running, {stuck} stuck",
        )

    async def _check_state_store(self, actions: List[str]) -> DependencyHealth:
        try:
            latency = await self._store.ping()
            keys = await self._store.scan_keys(f"{FIX_CHAIN_PREFIX}*")
            depths = await self._store.mget(keys) if keys else []
        except Exception as e:
            actions.append(f"State store unreachable: {e}")
            return DependencyHealth("state_store", DependencyStatus.UNHEALTHY, message=str(e))

        loops = 0
        for raw in depths:
            try:
                if raw is not None and int(raw) >= self._loop_threshold:
                    loops += 1
            except ValueError:
                continue
        actions.append(f"Checked state store: {latency:.1f}ms, {len(keys)} fix chain(s), {loops} in loop")
        if loops:
            actions.append(f"Warning: {loops} task(s) stuck in fix loops")
        return DependencyHealth(
            "state_store",
            DependencyStatus.HEALTHY,
            latency_ms=latency,
            message=f"{len(keys)} fix chain(s), {loops} loop(s)",
        )

    async def _check_cli(self, cli: str, actions: List[str]) -> DependencyHealth:
        start = time.monotonic()
        exit_code, stdout, stderr = await run_command([cli, "--version"], timeout=CLI_CHECK_TIMEOUT_SECONDS)
        latency = (time.monotonic() - start) * 1000
        if exit_code == 127:
            return DependencyHealth(cli, DependencyStatus.UNKNOWN, message="not installed")
        if exit_code != 0:
            actions.append(f"{cli} CLI unhealthy: {(stderr or stdout).strip()[:200]}")
            return DependencyHealth(cli, DependencyStatus.UNHEALTHY, latency_ms=latency,
                                    message=(stderr or stdout).strip()[:200])
        actions.append(f"Checked {cli} CLI: {stdout.strip()[:50]}")
        return DependencyHealth(cli, DependencyStatus.HEALTHY, latency_ms=latency, message=stdout.strip()[:100])

    async def _summarize_workers(self, actions: List[str]) -> None:
        try:
            summary = await self._liveness.get_worker_summary()
        except Exception as e:
            actions.append(f"Worker summary unavailable: {e}")
            return
        actions.append(
            f"Workers: {summary['healthy']} healthy, {summary['degraded']} degraded, "
            f"{summary['offline']} offline of {summary['configured']}"
        )

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------
    async def run_cleanup(self) -> Dict[str, int]:
        """Delete worker history older than the retention window.

        Closed workflow histories are expired by the Temporal namespace
        retention period, not here.
        """
        max_age = timedelta(days=self._cleanup_max_age_days)
        workers = await self._liveness.prune_history(max_age) if self._liveness else 0
        logger.info(f"Cleanup removed {workers} worker history record(s)")
        return {"worker_records_removed": workers}

    async def prune_worktrees(self) -> Dict[str, int]:
        if self._worktrees is None:
            return {"pruned": 0}
        result = await self._worktrees.prune_worktrees()
        logger.info(f"Pruned {result['pruned']} stale worktree(s)")
        return result
