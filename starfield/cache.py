"""
Keyed caches with TTL, schema version and insertion-order eviction.

Every cache in the engine is a `TimedCache`; they differ only in policy:

  search      lowercased query   5 min     30     –
  images      remote URL         session   80     release decoded handle
  posts       member id          60 min    10     cascade-delete post metadata
  beams       member id          60 min    12     –
  profile     member id          session   –      –

An entry is usable only while its version equals the cache's current version
and it is younger than the TTL. Expired or version-mismatched entries are
reported as misses but stay physically present until evicted.
"""
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Generic, Hashable, Iterator, Optional, TypeVar

from starfield.config import settings
from starfield.telemetry import CACHE_LOOKUPS_TOTAL

logger = logging.getLogger(__name__)

V = TypeVar("V")

_MISSING = object()


@dataclass
class CacheEntry(Generic[V]):
    key: Hashable
    value: V
    timestamp: float
    version: int


class TimedCache(Generic[V]):
    def __init__(
        self,
        name: str,
        ttl: Optional[float] = None,
        max_entries: Optional[int] = None,
        version: int = 1,
        on_evict: Optional[Callable[[Hashable, V], None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self.version = version
        self._on_evict = on_evict
        self._clock = clock
        self._entries: "OrderedDict[Hashable, CacheEntry[V]]" = OrderedDict()

    def _usable(self, entry: CacheEntry[V], now: float) -> Optional[str]:
        if entry.version != self.version:
            return "version"
        if self.ttl is not None and now - entry.timestamp >= self.ttl:
            return "expired"
        return None

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            CACHE_LOOKUPS_TOTAL.labels(cache=self.name, outcome="miss").inc()
            return default
        reason = self._usable(entry, self._clock())
        if reason is not None:
            CACHE_LOOKUPS_TOTAL.labels(cache=self.name, outcome=reason).inc()
            return default
        CACHE_LOOKUPS_TOTAL.labels(cache=self.name, outcome="hit").inc()
        return entry.value

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._usable(entry, self._clock()) is None

    def set(self, key: Hashable, value: V, timestamp: Optional[float] = None) -> None:
        """
        Store `value` under `key`. Overwriting keeps the key's insertion
        position; only a brand-new key can push the cache over capacity.
        """
        now = self._clock() if timestamp is None else timestamp
        is_new = key not in self._entries
        old = self._entries.get(key)
        self._entries[key] = CacheEntry(key, value, now, self.version)
        if old is not None and old.value is not value:
            self._release(key, old.value)
        if is_new:
            self.evict_if_over_capacity()

    def evict_if_over_capacity(self) -> int:
        if self.max_entries is None:
            return 0
        evicted = 0
        while len(self._entries) > self.max_entries:
            key, entry = self._entries.popitem(last=False)
            self._release(key, entry.value)
            evicted += 1
        if evicted:
            logger.debug("Cache %s evicted %d entries", self.name, evicted)
        return evicted

    def delete(self, key: Hashable) -> bool:
        entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._release(key, entry.value)
        return True

    def clear(self) -> None:
        for key, entry in list(self._entries.items()):
            self._release(key, entry.value)
        self._entries.clear()

    def bump_version(self) -> int:
        """Invalidate every current entry without dropping it."""
        self.version += 1
        return self.version

    def _release(self, key: Hashable, value: V) -> None:
        if self._on_evict is not None:
            self._on_evict(key, value)

    def entries(self) -> Iterator[CacheEntry[V]]:
        """Usable entries, oldest first."""
        now = self._clock()
        return iter([e for e in self._entries.values() if self._usable(e, now) is None])

    def __len__(self) -> int:
        """Physically present entries, usable or not."""
        return len(self._entries)


# ─────────────────────────── Image handles ────────────────────────────────

class ImageHandle:
    """A decoded image held by the sprite layer. Released exactly once."""

    def __init__(self, url: str, data: bytes) -> None:
        self.url = url
        self.data = data
        self.released = False

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.data = b""


def _release_image(_key: Hashable, handle: ImageHandle) -> None:
    handle.release()


# ─────────────────────────── Cache layer ──────────────────────────────────

class CacheLayer:
    """The engine's five caches plus the post metadata side cache."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self.search: TimedCache = TimedCache(
            "search",
            ttl=settings.search_cache_ttl,
            max_entries=settings.search_cache_max,
            version=settings.search_cache_version,
            clock=clock,
        )
        self.images: TimedCache[ImageHandle] = TimedCache(
            "images",
            max_entries=settings.image_cache_max,
            on_evict=_release_image,
            clock=clock,
        )
        # Post metadata by post id, owned by the posts cache
        self.post_data: TimedCache = TimedCache(
            "post_data",
            max_entries=settings.post_data_cache_max,
            clock=clock,
        )
        self.posts: TimedCache = TimedCache(
            "posts",
            ttl=settings.post_cache_ttl,
            max_entries=settings.post_cache_max,
            on_evict=self._drop_post_data,
            clock=clock,
        )
        self.beams: TimedCache = TimedCache(
            "beams",
            ttl=settings.beam_cache_ttl,
            max_entries=settings.beam_cache_max,
            clock=clock,
        )
        self.profile_pics: TimedCache[Optional[str]] = TimedCache("profile_pics", clock=clock)

    def _drop_post_data(self, _member_id: Hashable, post_set: Any) -> None:
        for post in getattr(post_set, "posts", None) or []:
            self.post_data.delete(post.id)

    def store_posts(self, member_id: str, post_set: Any, timestamp: Optional[float] = None) -> None:
        self.posts.set(member_id, post_set, timestamp=timestamp)
        for post in post_set.posts:
            self.post_data.set(post.id, post)

    def clear(self) -> None:
        for cache in (self.search, self.images, self.posts, self.post_data, self.beams, self.profile_pics):
            cache.clear()
