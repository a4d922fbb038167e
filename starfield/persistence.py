"""
Snapshot persistence.

Three documents in the key-value store:

  universeJobState   ingestion cursor, written after every merged page
  universeSnapshot   versioned, bounded copy of the entity store + cursor
  universeNavCache   bounded mirror of the post and engagement caches

A snapshot is only ever trusted whole: wrong version, unparseable JSON, a
failed validation or a synthetic-looking sample all read as "absent".
Saving never raises; quota pressure degrades to a smaller document once and
then gives up.
"""
import json
import logging
import re
import time
from typing import Callable, Optional

from opentelemetry import trace
from pydantic import ValidationError

from starfield.cache import CacheLayer
from starfield.clients.kv_store import KeyValueStore
from starfield.config import settings
from starfield.entity_store import EntityStore
from starfield.errors import QuotaExceededError, SchemaMismatchError
from starfield.presentation import activity_color
from starfield.schemas import (
    BeamCacheEntry,
    BeamData,
    IngestionCursor,
    NavCache,
    PostCacheEntry,
    PostSet,
    Snapshot,
    SnapshotMember,
)
from starfield.telemetry import SNAPSHOT_BYTES, SNAPSHOT_SAVES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SNAPSHOT_KEY = "universeSnapshot"
NAV_CACHE_KEY = "universeNavCache"
JOB_STATE_KEY = "universeJobState"

SYNTHETIC_SAMPLE = 20
_SYNTHETIC_USERNAME = re.compile(r"^User\d+$", re.IGNORECASE)


def is_synthetic(snapshot: Snapshot) -> bool:
    """Majority of the leading sample uses generated ids or placeholder names."""
    sample = snapshot.members[:SYNTHETIC_SAMPLE]
    if not sample:
        return False
    synthetic = sum(
        1 for m in sample
        if m.id.startswith("member_") or _SYNTHETIC_USERNAME.match(m.username or "")
    )
    return synthetic * 2 > len(sample)


def _dumps(model) -> str:
    return model.model_dump_json()


class SnapshotPersistence:
    def __init__(
        self,
        kv: KeyValueStore,
        version: Optional[int] = None,
        max_members: Optional[int] = None,
        image_ref_cutoff: Optional[int] = None,
        reduced_members: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.version = version if version is not None else settings.snapshot_version
        self.max_members = max_members or settings.snapshot_max_members
        self.image_ref_cutoff = (
            image_ref_cutoff if image_ref_cutoff is not None else settings.snapshot_image_ref_cutoff
        )
        self.reduced_members = reduced_members or settings.snapshot_reduced_members
        self._clock = clock
        self._quota_warned = False

    # ─────────────────────── cursor ───────────────────────────────────────

    async def load_cursor(self) -> Optional[IngestionCursor]:
        raw = await self.kv.get_item(JOB_STATE_KEY)
        if not raw:
            return None
        try:
            return IngestionCursor.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable ingestion cursor")
            return None

    async def save_cursor(self, cursor: IngestionCursor) -> None:
        """Raises on storage failure; ingestion decides what that means."""
        await self.kv.set_item(JOB_STATE_KEY, _dumps(cursor))

    async def clear_cursor(self) -> None:
        await self.kv.remove_item(JOB_STATE_KEY)

    # ─────────────────────── snapshot ─────────────────────────────────────

    def build(self, store: EntityStore, cursor: IngestionCursor) -> Snapshot:
        total = len(store)
        cap = min(total, self.max_members)
        positions, sizes, activities = store.positions, store.sizes, store.activities
        members = []
        for slot in range(cap):
            member_id = store.id_at(slot)
            member = store.get(member_id)
            x, y, z = (round(float(v), 2) for v in positions[slot])
            members.append(
                SnapshotMember(
                    id=member_id,
                    username=member.username,
                    pro_pic=member.profile_image_ref if slot < self.image_ref_cutoff else None,
                    x=x,
                    y=y,
                    z=z,
                    size=round(float(sizes[slot]) or 1.0, 2),
                    activity=round(float(activities[slot]), 2),
                    sobriety_days=member.sobriety_days,
                    region=member.region,
                    city=member.city,
                    country=member.country,
                )
            )
        skips = cursor.model_copy(update={"total_members": cap}) if cap < total else cursor
        return Snapshot(version=self.version, timestamp=self._clock(), skips=skips, members=members)

    async def save(
        self,
        store: EntityStore,
        cursor: IngestionCursor,
        caches: Optional[CacheLayer] = None,
    ) -> str:
        """
        Persist the store. Returns 'full', 'reduced', 'empty' or 'skipped';
        never raises.
        """
        if len(store) == 0:
            return "empty"
        with tracer.start_as_current_span("snapshot.save") as span:
            snap = self.build(store, cursor)
            span.set_attribute("snapshot.members", len(snap.members))
            try:
                outcome = await self._write(snap)
            except QuotaExceededError:
                outcome = "skipped"
                if not self._quota_warned:
                    self._quota_warned = True
                    logger.warning("Snapshot store full, skipping save")
            except Exception as exc:
                outcome = "skipped"
                logger.warning("Snapshot save failed: %s", exc)
            SNAPSHOT_SAVES_TOTAL.labels(outcome=outcome).inc()
            span.set_attribute("snapshot.outcome", outcome)

        if outcome != "skipped" and caches is not None:
            await self.save_nav_cache(caches)
        return outcome

    async def _write(self, snap: Snapshot) -> str:
        doc = _dumps(snap)
        try:
            await self.kv.set_item(SNAPSHOT_KEY, doc)
            SNAPSHOT_BYTES.set(len(doc))
            logger.info("Snapshot saved: %d members", len(snap.members))
            return "full"
        except QuotaExceededError:
            logger.warning(
                "Snapshot of %d members exceeds quota, retrying with %d and no images or locations",
                len(snap.members),
                self.reduced_members,
            )
        smaller = snap.model_copy(
            update={
                "members": [
                    m.model_copy(update={"pro_pic": None, "region": None, "city": None, "country": None})
                    for m in snap.members[: self.reduced_members]
                ]
            }
        )
        doc = _dumps(smaller)
        await self.kv.set_item(SNAPSHOT_KEY, doc)
        SNAPSHOT_BYTES.set(len(doc))
        logger.info("Snapshot saved (reduced): %d members", len(smaller.members))
        return "reduced"

    def parse(self, raw: str) -> Snapshot:
        """Validate a stored document; raises SchemaMismatchError when unusable."""
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise SchemaMismatchError("snapshot is not valid JSON") from exc
        if not isinstance(data, dict) or data.get("version") != self.version:
            raise SchemaMismatchError(
                f"snapshot version {data.get('version') if isinstance(data, dict) else None!r} "
                f"!= {self.version}"
            )
        try:
            snap = Snapshot.model_validate(data)
        except ValidationError as exc:
            raise SchemaMismatchError(f"snapshot shape mismatch: {exc.error_count()} errors") from exc
        if is_synthetic(snap):
            raise SchemaMismatchError("snapshot looks synthetic")
        return snap

    async def load(self) -> Optional[Snapshot]:
        raw = await self.kv.get_item(SNAPSHOT_KEY)
        if not raw:
            return None
        try:
            return self.parse(raw)
        except SchemaMismatchError as exc:
            logger.info("Ignoring stored snapshot: %s", exc)
            return None

    async def has_stored_snapshot(self) -> bool:
        """True when a snapshot document exists, usable or not."""
        return bool(await self.kv.get_item(SNAPSHOT_KEY))

    def restore(self, snapshot: Snapshot, store: EntityStore) -> int:
        """
        Rebuild the store from snapshot fields alone. Colour is recomputed
        from activity; risk falls back to neutral until ingestion refreshes it.
        """
        restored = 0
        for m in snapshot.members:
            slot = store.append(
                m.id,
                position=(m.x, m.y, m.z),
                color=activity_color(m.activity),
                size=m.size,
                activity_score=m.activity,
                username=m.username or "Anonymous",
                profile_image_ref=m.pro_pic,
                risk_score=50,
                risk_level="medium",
                activity=int(round(m.activity * 100)),
                sobriety_days=m.sobriety_days,
                cluster_label="Snapshot",
                region=m.region,
                city=m.city,
                country=m.country,
            )
            if slot is not None:
                restored += 1
        logger.info("Restored %d members from snapshot", restored)
        return restored

    def is_fresh(self, timestamp: float, max_age: Optional[float] = None) -> bool:
        max_age = settings.snapshot_fresh_seconds if max_age is None else max_age
        return self._clock() - timestamp < max_age

    # ─────────────────────── navigation cache mirror ──────────────────────

    async def save_nav_cache(self, caches: CacheLayer, max_users: Optional[int] = None) -> bool:
        limit = max_users or settings.nav_cache_max_users
        beams = [
            BeamCacheEntry(
                user_id=e.key,
                engagement_count=e.value.engagement_count,
                post_creator_map=e.value.post_creator_map,
                comments_for_layout=e.value.comments_for_layout,
                comment_count=e.value.comment_count,
                timestamp=e.timestamp,
            )
            for e in list(caches.beams.entries())[:limit]
        ]
        posts = [
            PostCacheEntry(user_id=e.key, posts=e.value.posts, capped=e.value.capped, timestamp=e.timestamp)
            for e in list(caches.posts.entries())[:limit]
        ]
        doc = NavCache(version=settings.nav_cache_version, beam_cache=beams, post_cache=posts)
        try:
            await self.kv.set_item(NAV_CACHE_KEY, _dumps(doc))
        except QuotaExceededError:
            logger.debug("Navigation cache mirror skipped: quota")
            return False
        return True

    async def restore_nav_cache(self, caches: CacheLayer) -> int:
        """Entries come back as fresh so restored members need no refetch."""
        raw = await self.kv.get_item(NAV_CACHE_KEY)
        if not raw:
            return 0
        try:
            doc = NavCache.model_validate_json(raw)
        except ValidationError:
            logger.info("Ignoring unreadable navigation cache mirror")
            return 0
        if doc.version != settings.nav_cache_version:
            return 0
        now = caches.clock()
        for entry in doc.beam_cache:
            caches.beams.set(
                entry.user_id,
                BeamData(
                    member_id=entry.user_id,
                    engagement_count=entry.engagement_count,
                    post_creator_map=entry.post_creator_map,
                    comment_count=entry.comment_count,
                    comments_for_layout=entry.comments_for_layout,
                ),
                timestamp=now,
            )
        for entry in doc.post_cache:
            caches.store_posts(
                entry.user_id,
                PostSet(member_id=entry.user_id, posts=entry.posts, capped=entry.capped),
                timestamp=now,
            )
        restored = len(doc.beam_cache) + len(doc.post_cache)
        logger.debug("Restored %d navigation cache entries", restored)
        return restored

    # ─────────────────────── admin ────────────────────────────────────────

    async def clear_snapshot(self) -> None:
        await self.kv.remove_item(SNAPSHOT_KEY)
        await self.kv.remove_item(NAV_CACHE_KEY)
        logger.info("Snapshot cleared")

    async def reset(self) -> None:
        await self.clear_cursor()
        await self.clear_snapshot()
