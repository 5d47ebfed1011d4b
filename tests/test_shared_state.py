"""
Shared State Store Tests

RedisStateStore runs against fakeredis; InMemoryStateStore against the
fake clock.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio

from swarm_controller.errors import StateStoreError
from swarm_controller.rollback import RollbackController
from swarm_controller.shared_state import (
    InMemoryStateStore,
    RedisStateStore,
    create_state_store,
    fix_chain_key,
    worker_health_key,
)


@pytest_asyncio.fixture
async def fake_redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()


@pytest.fixture
def redis_store(fake_redis):
    return RedisStateStore(client=fake_redis)


# -----------------------------------------------------------------------------
# Redis backend
# -----------------------------------------------------------------------------
class TestRedisStateStore:
    """Tests for the redis.asyncio backend."""

    @pytest.mark.asyncio
    async def test_set_with_ttl_uses_expiry(self, redis_store, fake_redis):
        await redis_store.set(worker_health_key("w1"), '{"status": "healthy"}', ttl_seconds=90)

        assert await redis_store.get(worker_health_key("w1")) == '{"status": "healthy"}'
        assert 0 < await fake_redis.ttl(worker_health_key("w1")) <= 90

    @pytest.mark.asyncio
    async def test_set_without_ttl_persists(self, redis_store, fake_redis):
        await redis_store.set("swarm:paused", "true")

        assert await fake_redis.ttl("swarm:paused") == -1

    @pytest.mark.asyncio
    async def test_incr_then_expire(self, redis_store, fake_redis):
        key = fix_chain_key("T1")

        assert await redis_store.incr(key) == 1
        assert await redis_store.incr(key) == 2
        await redis_store.expire(key, 7 * 24 * 60 * 60)

        assert await fake_redis.get(key) == "2"
        assert await fake_redis.ttl(key) > 0

    @pytest.mark.asyncio
    async def test_incr_on_non_integer_raises(self, redis_store):
        await redis_store.set("swarm:paused", "true")

        with pytest.raises(StateStoreError):
            await redis_store.incr("swarm:paused")

    @pytest.mark.asyncio
    async def test_concurrent_fix_tasks_get_distinct_depths(self, redis_store, tmp_path):
        client = MagicMock()
        client.start_workflow = AsyncMock()
        controller = RollbackController(tmp_path, redis_store, client=client)

        results = await asyncio.gather(*[controller.create_fix_task("T1", "One", "e") for _ in range(8)])

        assert {r.chain_depth for r in results} == set(range(1, 9))

    @pytest.mark.asyncio
    async def test_scan_keys_matches_pattern(self, redis_store):
        await redis_store.incr(fix_chain_key("T1"))
        await redis_store.incr(fix_chain_key("T2"))
        await redis_store.set(worker_health_key("w1"), "{}", ttl_seconds=90)

        keys = await redis_store.scan_keys("task:chain:*")

        assert sorted(keys) == [fix_chain_key("T1"), fix_chain_key("T2")]

    @pytest.mark.asyncio
    async def test_mget_keeps_order_and_missing_keys(self, redis_store):
        await redis_store.set("a", "1")
        await redis_store.set("c", "3")

        assert await redis_store.mget(["a", "b", "c"]) == ["1", None, "3"]
        assert await redis_store.mget([]) == []

    @pytest.mark.asyncio
    async def test_delete_and_ping(self, redis_store):
        await redis_store.set("swarm:paused", "true")
        await redis_store.delete("swarm:paused")

        assert await redis_store.get("swarm:paused") is None
        assert await redis_store.ping() >= 0.0

    @pytest.mark.asyncio
    async def test_close_uses_aclose(self):
        client = MagicMock()
        client.aclose = AsyncMock()

        await RedisStateStore(client=client).close()

        client.aclose.assert_awaited_once()


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------
class TestInMemoryStateStore:
    """Tests for the single-process backend."""

    @pytest.mark.asyncio
    async def test_ttl_follows_clock(self, memory_store, clock):
        await memory_store.set("k", "v", ttl_seconds=90)
        clock.advance(89)
        assert await memory_store.get("k") == "v"

        clock.advance(1)
        assert await memory_store.get("k") is None

    @pytest.mark.asyncio
    async def test_incr_keeps_expiry(self, memory_store, clock):
        key = fix_chain_key("T1")
        await memory_store.incr(key)
        await memory_store.expire(key, 60)
        await memory_store.incr(key)

        clock.advance(60)

        assert await memory_store.get(key) is None

    @pytest.mark.asyncio
    async def test_scan_skips_expired_keys(self, memory_store, clock):
        await memory_store.set(fix_chain_key("T1"), "1", ttl_seconds=10)
        await memory_store.set(fix_chain_key("T2"), "1")
        clock.advance(10)

        assert await memory_store.scan_keys("task:chain:*") == [fix_chain_key("T2")]

    @pytest.mark.asyncio
    async def test_closed_store_raises(self, memory_store):
        await memory_store.close()

        with pytest.raises(StateStoreError):
            await memory_store.get("k")


class TestCreateStateStore:
    """Tests for backend selection."""

    def test_memory_backend(self):
        assert isinstance(create_state_store("memory", "redis://unused"), InMemoryStateStore)

    def test_redis_backend(self):
        assert isinstance(create_state_store("redis", "redis://localhost:6379/0"), RedisStateStore)
