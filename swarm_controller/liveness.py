"""
Liveness Registry

Workers publish heartbeats to the shared state store under
worker:health:<workerId> with a 90 second TTL. A missing key is the only
offline signal; there is no deregistration.

Every heartbeat is also written, best effort, to a durable history file
holding the last known record per worker. History failures are logged and
never reach the worker.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from .config import DEFAULT_WORKER_COUNT, HEARTBEAT_TTL_SECONDS
from .errors import ValidationError
from .shared_state import WORKER_HEALTH_PREFIX, StateStore, worker_health_key

logger = logging.getLogger("liveness")


class WorkerStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


@dataclass
class WorkerHealth:
    worker_id: str
    status: WorkerStatus
    last_heartbeat: Optional[datetime] = None
    current_task: Optional[str] = None
    llm_provider: Optional[str] = None
    auth_status: Dict[str, bool] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "status": self.status.value,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            "current_task": self.current_task,
            "llm_provider": self.llm_provider,
            "auth_status": self.auth_status,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkerHealth":
        last = data.get("last_heartbeat")
        return cls(
            worker_id=data["worker_id"],
            status=WorkerStatus(data["status"]),
            last_heartbeat=datetime.fromisoformat(last) if last else None,
            current_task=data.get("current_task"),
            llm_provider=data.get("llm_provider"),
            auth_status=data.get("auth_status") or {},
            metadata=data.get("metadata") or {},
        )

    @classmethod
    def placeholder(cls, worker_id: str) -> "WorkerHealth":
        return cls(worker_id=worker_id, status=WorkerStatus.OFFLINE)


# -----------------------------------------------------------------------------
# Durable history
# -----------------------------------------------------------------------------
class HeartbeatHistoryStore:
    """Last known heartbeat per worker, kept in a JSON file."""

    def __init__(self, history_file: Path):
        self._history_file = history_file
        self._lock = asyncio.Lock()
        self._history_file.parent.mkdir(parents=True, exist_ok=True)

    async def record(self, health: WorkerHealth) -> None:
        async with self._lock:
            history = self._load()
            history[health.worker_id] = health.to_dict()
            self._save(history)

    def load_all(self) -> List[WorkerHealth]:
        records = []
        for data in self._load().values():
            try:
                records.append(WorkerHealth.from_dict(data))
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable history record: {e}")
        return sorted(records, key=lambda r: r.worker_id)

    async def prune(self, older_than: datetime) -> int:
        """Drop workers whose last heartbeat is older than `older_than`."""
        async with self._lock:
            history = self._load()
            stale = [
                worker_id for worker_id, data in history.items()
                if not data.get("last_heartbeat")
                or datetime.fromisoformat(data["last_heartbeat"]) < older_than
            ]
            for worker_id in stale:
                del history[worker_id]
            if stale:
                self._save(history)
            return len(stale)

    def _load(self) -> Dict[str, Any]:
        if not self._history_file.exists():
            return {}
        try:
            data = json.loads(self._history_file.read_text())
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Failed to load worker history: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, history: Dict[str, Any]) -> None:
        temp_file = self._history_file.with_suffix(".tmp")
        temp_file.write_text(json.dumps(history, indent=2, default=str))
        temp_file.replace(self._history_file)


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------
class LivenessRegistry:
    def __init__(
        self,
        store: StateStore,
        history: Optional[HeartbeatHistoryStore] = None,
        configured_workers: int = DEFAULT_WORKER_COUNT,
        ttl_seconds: int = HEARTBEAT_TTL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._store = store
        self._history = history
        self._configured_workers = configured_workers
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def publish_heartbeat(
        self,
        worker_id: str,
        status: WorkerStatus = WorkerStatus.HEALTHY,
        current_task: Optional[str] = None,
        llm_provider: Optional[str] = None,
        auth_status: Optional[Dict[str, bool]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WorkerHealth:
        """Publish a live heartbeat. Only healthy or degraded may be reported."""
        status = WorkerStatus(status)
        if status == WorkerStatus.OFFLINE:
            raise ValidationError("Workers cannot report themselves offline; let the heartbeat expire")

        health = WorkerHealth(
            worker_id=worker_id,
            status=status,
            last_heartbeat=self._clock(),
            current_task=current_task,
            llm_provider=llm_provider,
            auth_status=auth_status or {},
            metadata=metadata or {},
        )
        await self._store.set(worker_health_key(worker_id), json.dumps(health.to_dict()), self._ttl_seconds)
        logger.debug(f"Heartbeat from {worker_id}: {status.value}")

        if self._history is not None:
            task = asyncio.create_task(self._history.record(health))
            self._pending.add(task)
            task.add_done_callback(self._history_written)
        return health

    def _history_written(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Failed to persist heartbeat history: {error}")

    async def flush_history(self) -> None:
        """Wait for pending history writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def get_all_worker_health(self) -> List[WorkerHealth]:
        """
        Live worker records sorted by id.

        With no live records, one offline placeholder per configured slot is
        returned so dashboards always show the expected fleet.
        """
        keys = await self._store.scan_keys(f"{WORKER_HEALTH_PREFIX}*")
        if not keys:
            return [
                WorkerHealth.placeholder(f"worker-{i}")
                for i in range(1, self._configured_workers + 1)
            ]

        records = []
        for key, raw in zip(keys, await self._store.mget(keys)):
            if raw is None:
                continue
            try:
                records.append(WorkerHealth.from_dict(json.loads(raw)))
            except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping malformed heartbeat at {key}: {e}")
        return sorted(records, key=lambda r: r.worker_id)

    async def get_configured_worker_count(self) -> int:
        """Healthy live workers, or the configured default when none report."""
        records = await self.get_all_worker_health()
        healthy = sum(1 for r in records if r.status == WorkerStatus.HEALTHY)
        return healthy if healthy > 0 else self._configured_workers

    async def get_worker_summary(self) -> Dict[str, int]:
        records = await self.get_all_worker_health()
        live = [r for r in records if r.status != WorkerStatus.OFFLINE]
        healthy = sum(1 for r in live if r.status == WorkerStatus.HEALTHY)
        degraded = sum(1 for r in live if r.status == WorkerStatus.DEGRADED)
        return {
            "configured": self._configured_workers,
            "healthy": healthy,
            "degraded": degraded,
            "offline": max(0, self._configured_workers - len(live)),
        }

    def get_worker_history(self) -> List[WorkerHealth]:
        return self._history.load_all() if self._history else []

    async def prune_history(self, max_age: timedelta) -> int:
        if self._history is None:
            return 0
        return await self._history.prune(self._clock() - max_age)
