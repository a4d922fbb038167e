"""
Persistent local key-value store.

Holds three documents: the ingestion cursor, the universe snapshot and the
navigation-cache mirror. Values are strings. Both backends enforce an optional
byte quota across all keys and raise `QuotaExceededError` when a write would
exceed it, so snapshot degradation behaves the same on either.
"""
import logging
from typing import Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import ResponseError

from starfield.config import settings
from starfield.errors import QuotaExceededError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get_item(self, key: str) -> Optional[str]: ...

    async def set_item(self, key: str, value: str) -> None: ...

    async def remove_item(self, key: str) -> None: ...


def _size(value: str) -> int:
    return len(value.encode("utf-8"))


class MemoryKeyValueStore:
    """Process-local backend; used by tests and `kv_backend=memory`."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self.quota_bytes = quota_bytes
        self._items: dict[str, str] = {}

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if self.quota_bytes is not None:
            used = sum(_size(v) for k, v in self._items.items() if k != key)
            if used + _size(value) > self.quota_bytes:
                raise QuotaExceededError(
                    f"writing {key} ({_size(value)} bytes) exceeds quota of {self.quota_bytes}"
                )
        self._items[key] = value

    async def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class RedisKeyValueStore:
    """
    Redis-backed store. Keys are namespaced with `kv_key_prefix`; the quota
    is tracked in a companion hash of per-key sizes.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        db: Optional[int] = None,
        quota_bytes: Optional[int] = None,
        prefix: Optional[str] = None,
    ) -> None:
        self.host = host or settings.redis_host
        self.port = port or settings.redis_port
        self.db = db if db is not None else settings.redis_db
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.kv_quota_bytes
        self.prefix = prefix if prefix is not None else settings.kv_key_prefix
        self._redis: Optional[aioredis.Redis] = None

    async def start(self) -> None:
        self._redis = aioredis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info("Redis key-value store connected at %s:%s", self.host, self.port)

    async def stop(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _r(self) -> aioredis.Redis:
        if self._redis is None:
            raise RuntimeError("Redis not initialised — call start() at startup")
        return self._redis

    @property
    def _sizes_key(self) -> str:
        return f"{self.prefix}__sizes__"

    async def get_item(self, key: str) -> Optional[str]:
        return await self._r().get(self.prefix + key)

    async def set_item(self, key: str, value: str) -> None:
        r = self._r()
        size = _size(value)
        if self.quota_bytes:
            sizes = await r.hgetall(self._sizes_key)
            used = sum(int(v) for k, v in sizes.items() if k != key)
            if used + size > self.quota_bytes:
                raise QuotaExceededError(
                    f"writing {key} ({size} bytes) exceeds quota of {self.quota_bytes}"
                )
        try:
            pipe = r.pipeline()
            pipe.set(self.prefix + key, value)
            pipe.hset(self._sizes_key, key, size)
            await pipe.execute()
        except ResponseError as exc:
            if "OOM" in str(exc):
                raise QuotaExceededError(str(exc)) from exc
            raise

    async def remove_item(self, key: str) -> None:
        r = self._r()
        pipe = r.pipeline()
        pipe.delete(self.prefix + key)
        pipe.hdel(self._sizes_key, key)
        await pipe.execute()


def build_kv_store(backend: Optional[str] = None) -> KeyValueStore:
    backend = backend or settings.kv_backend
    if backend == "memory":
        return MemoryKeyValueStore(quota_bytes=settings.kv_quota_bytes)
    if backend == "redis":
        return RedisKeyValueStore()
    raise ValueError(f"unknown key-value backend {backend!r}")
