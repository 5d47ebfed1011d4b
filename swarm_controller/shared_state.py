"""
Shared State Store

Small key/value surface shared by all workers: heartbeats, fix-chain
counters and the swarm kill switch. Two backends:

- RedisStateStore: production backend on redis.asyncio
- InMemoryStateStore: single-process backend with an injectable clock,
  used for single-node mode and tests

Clients are constructed explicitly and passed to components; callers own
their lifetime and must close() them on shutdown.
"""

import fnmatch
import logging
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ResponseError

from .errors import StateStoreError

logger = logging.getLogger("shared_state")


# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------
WORKER_HEALTH_PREFIX = "worker:health:"
FIX_CHAIN_PREFIX = "task:chain:"
SWARM_PAUSED_KEY = "swarm:paused"


def worker_health_key(worker_id: str) -> str:
    return f"{WORKER_HEALTH_PREFIX}{worker_id}"


def fix_chain_key(original_task_id: str) -> str:
    return f"{FIX_CHAIN_PREFIX}{original_task_id}"


# -----------------------------------------------------------------------------
# Interface
# -----------------------------------------------------------------------------
class StateStore(ABC):
    """Async key/value store with TTLs and an atomic increment."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """Atomically increment an integer key, creating it at 1."""

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        ...

    @abstractmethod
    async def scan_keys(self, pattern: str) -> List[str]:
        """Incremental key scan. Never blocks the server the way KEYS does."""

    @abstractmethod
    async def ping(self) -> float:
        """Round trip in milliseconds. Raises when unreachable."""

    @abstractmethod
    async def close(self) -> None:
        ...


# -----------------------------------------------------------------------------
# Redis backend
# -----------------------------------------------------------------------------
class RedisStateStore(StateStore):
    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[redis.Redis] = None):
        self._url = url
        self._client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds:
            await self._client.setex(key, ttl_seconds, value)
        else:
            await self._client.set(key, value)

    async def incr(self, key: str) -> int:
        try:
            return int(await self._client.incr(key))
        except ResponseError as e:
            raise StateStoreError(f"INCR failed for {key}: {e}", {"key": key})

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._client.expire(key, ttl_seconds)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self._client.mget(keys)

    async def scan_keys(self, pattern: str) -> List[str]:
        keys = []
        async for key in self._client.scan_iter(match=pattern, count=100):
            keys.append(key)
        return keys

    async def ping(self) -> float:
        start = time.monotonic()
        await self._client.ping()
        return (time.monotonic() - start) * 1000

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis state store closed")


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------
class InMemoryStateStore(StateStore):
    """
    Process-local store with Redis semantics for the operations we use.

    Expiry is evaluated lazily against `clock`, so tests can move time
    forward without sleeping. Every operation completes without awaiting,
    which makes incr atomic within one event loop.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._closed = False

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _check_open(self) -> None:
        if self._closed:
            raise StateStoreError("State store is closed")

    async def get(self, key: str) -> Optional[str]:
        self._check_open()
        entry = self._live(key)
        return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._check_open()
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._data[key] = (str(value), expires_at)

    async def incr(self, key: str) -> int:
        self._check_open()
        entry = self._live(key)
        if entry is None:
            self._data[key] = ("1", None)
            return 1
        value, expires_at = entry
        try:
            new_value = int(value) + 1
        except ValueError:
            raise StateStoreError(f"Value at {key} is not an integer", {"key": key})
        self._data[key] = (str(new_value), expires_at)
        return new_value

    async def expire(self, key: str, ttl_seconds: int) -> None:
        self._check_open()
        entry = self._live(key)
        if entry:
            self._data[key] = (entry[0], self._clock() + ttl_seconds)

    async def delete(self, key: str) -> None:
        self._check_open()
        self._data.pop(key, None)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        return [await self.get(k) for k in keys]

    async def scan_keys(self, pattern: str) -> List[str]:
        self._check_open()
        return [k for k in list(self._data) if fnmatch.fnmatchcase(k, pattern) and self._live(k)]

    async def ping(self) -> float:
        self._check_open()
        return 0.0

    async def close(self) -> None:
        self._closed = True


def create_state_store(backend: str, redis_url: str) -> StateStore:
    if backend == "memory":
        logger.info("Using in-memory state store (single-node mode)")
        return InMemoryStateStore()
    logger.info(f"Using Redis state store at {redis_url.split('@')[-1]}")
    return RedisStateStore(redis_url)
