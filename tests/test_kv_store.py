"""Tests for the key-value store backends."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from starfield.clients.kv_store import MemoryKeyValueStore, RedisKeyValueStore, build_kv_store
from starfield.errors import QuotaExceededError


class TestMemoryKeyValueStore:
    async def test_round_trip(self):
        kv = MemoryKeyValueStore()
        await kv.set_item("k", "v")
        assert await kv.get_item("k") == "v"
        await kv.remove_item("k")
        assert await kv.get_item("k") is None
        await kv.remove_item("k")

    async def test_quota(self):
        kv = MemoryKeyValueStore(quota_bytes=10)
        await kv.set_item("a", "x" * 6)
        with pytest.raises(QuotaExceededError):
            await kv.set_item("b", "x" * 5)
        # overwriting a key does not count its old value
        await kv.set_item("a", "x" * 10)
        assert len(kv) == 1


class TestRedisKeyValueStore:
    @pytest.fixture
    def redis_mock(self):
        redis = MagicMock()
        redis.get = AsyncMock(return_value="stored")
        redis.hgetall = AsyncMock(return_value={"universeSnapshot": "10"})
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[True, 1])
        redis.pipeline.return_value = pipe
        return redis

    @pytest.fixture
    def store(self, redis_mock):
        kv = RedisKeyValueStore(quota_bytes=15, prefix="sf:")
        kv._redis = redis_mock
        return kv

    async def test_get_is_prefixed(self, store, redis_mock):
        assert await store.get_item("universeJobState") == "stored"
        redis_mock.get.assert_awaited_once_with("sf:universeJobState")

    async def test_set_tracks_size(self, store, redis_mock):
        await store.set_item("universeSnapshot", "x" * 12)
        pipe = redis_mock.pipeline.return_value
        pipe.set.assert_called_once_with("sf:universeSnapshot", "x" * 12)
        pipe.hset.assert_called_once_with("sf:__sizes__", "universeSnapshot", 12)

    async def test_set_over_quota(self, store, redis_mock):
        with pytest.raises(QuotaExceededError):
            await store.set_item("universeNavCache", "x" * 6)
        redis_mock.pipeline.assert_not_called()

    async def test_remove(self, store, redis_mock):
        await store.remove_item("universeSnapshot")
        pipe = redis_mock.pipeline.return_value
        pipe.delete.assert_called_once_with("sf:universeSnapshot")
        pipe.hdel.assert_called_once_with("sf:__sizes__", "universeSnapshot")

    def test_not_started(self):
        with pytest.raises(RuntimeError):
            RedisKeyValueStore()._r()


def test_build_kv_store():
    assert isinstance(build_kv_store("memory"), MemoryKeyValueStore)
    assert isinstance(build_kv_store("redis"), RedisKeyValueStore)
    with pytest.raises(ValueError):
        build_kv_store("sqlite")
