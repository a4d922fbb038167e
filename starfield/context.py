"""
Engine context: owns the one active dataset and every component around it.

The host application builds one `EngineContext` and passes it wherever the
engine is needed (the FastAPI app keeps it on `app.state`). All UI input goes
through the `on_*` entry points below.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

from starfield.cache import CacheLayer
from starfield.clients.kv_store import KeyValueStore, RedisKeyValueStore, build_kv_store
from starfield.clients.remote_client import RemoteClient
from starfield.decorations import DecorationLoader
from starfield.entity_store import EntityStore
from starfield.errors import NotFoundError, RemoteServiceError, TransientNetworkError
from starfield.events import Event, EventBus, ValueChanged
from starfield.guard import GenerationGuard
from starfield.ingestion import JOB_TYPE, IngestionController
from starfield.jobs import JobBoard
from starfield.layout import HashLayout, LayoutOracle
from starfield.locations import filter_options, is_active, visible_slots
from starfield.persistence import SnapshotPersistence
from starfield.presentation import (
    activity_score,
    member_size,
    risk_color,
    risk_level,
    risk_score_for,
    sobriety_days_since,
)
from starfield.render import InMemoryRenderTarget, PointSet, RenderTarget
from starfield.schemas import JobRecord, LocationFilter, LocationOptions, MemberDetail, SearchResult
from starfield.search import FALLBACK_RADIUS, MemberSearch
from starfield.selection import SelectionFSM

logger = logging.getLogger(__name__)


class EngineContext:
    def __init__(
        self,
        remote: Optional[RemoteClient] = None,
        kv: Optional[KeyValueStore] = None,
        render: Optional[RenderTarget] = None,
        layout: Optional[LayoutOracle] = None,
        store: Optional[EntityStore] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        **ingestion_options,
    ) -> None:
        self.clock = clock
        self.events = EventBus()
        self.store = store or EntityStore()
        self.caches = CacheLayer(clock=clock)
        self.remote = remote or RemoteClient()
        self.kv = kv or build_kv_store()
        self.render = render or InMemoryRenderTarget()
        self.layout = layout or HashLayout()
        self.jobs = JobBoard(clock=clock)
        self.persistence = SnapshotPersistence(self.kv, clock=clock)
        self.ingestion = IngestionController(
            self.store,
            self.remote,
            self.persistence,
            self.layout,
            self.jobs,
            caches=self.caches,
            events=self.events,
            clock=clock,
            **ingestion_options,
        )
        self.selection_guard = GenerationGuard("selection")
        self.decorations = DecorationLoader(
            self.store,
            self.remote,
            self.caches,
            self.render,
            self.selection_guard,
            on_engagement=self.ingestion.feed_engagement,
        )
        self.selection = SelectionFSM(
            self.store, self.decorations, self.selection_guard, self.events, clock=monotonic
        )
        self.search = MemberSearch(self.store, self.remote, self.caches, self.layout, self.events)

        self.location_filter = LocationFilter()
        self.frame = 0
        self._points_dirty = True
        self._load_task: Optional[asyncio.Task] = None
        self.events.subscribe(self._on_event)

    def _on_event(self, event: Event) -> None:
        if isinstance(event, ValueChanged) and event.name in ("universe.count", "ingestion.state"):
            self._points_dirty = True

    # ─────────────────────── lifecycle ────────────────────────────────────

    async def start(self) -> None:
        await self.remote.start()
        if isinstance(self.kv, RedisKeyValueStore):
            await self.kv.start()
        restored = await self.ingestion.bootstrap()
        if restored:
            logger.info("Universe restored with %d members", restored)
        self.push_points()

    async def stop(self) -> None:
        self.ingestion.cancel_reschedule()
        self.selection_guard.cancel_pending()
        self.search.guard.cancel_pending()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        await self.remote.stop()
        if isinstance(self.kv, RedisKeyValueStore):
            await self.kv.stop()

    # ─────────────────────── UI event surface ─────────────────────────────

    async def on_search_input(self, text: str) -> list[SearchResult]:
        return await self.search.search(text)

    def on_search_keystroke(self, text: str) -> Optional[asyncio.Task]:
        return self.search.on_input(text)

    async def on_select(self, slug: str) -> MemberDetail:
        """
        Select by id or username, fetching the member remotely if needed.

        The selection generation is claimed before the lookup; if another
        select or a close lands while the lookup is in flight, this one raises
        `StaleResultDiscarded` instead of overriding it.
        """
        token = self.selection_guard.issue()
        member_id = await self.resolve_member(slug)
        self.selection_guard.check(token)
        if member_id is None:
            raise NotFoundError(f"no member matches {slug!r}")
        self.selection.select(member_id)
        self._points_dirty = True
        return self.selection.detail()

    def on_close(self) -> None:
        # Supersedes a selection whose member lookup is still in flight
        self.selection_guard.issue()
        self.selection.close()

    async def on_reset_job_state(self) -> None:
        self.selection.close()
        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
        await self.ingestion.reset()
        self.caches.clear()
        self.push_points()
        logger.info("Job state reset: cursor, snapshot and in-memory universe cleared")

    async def on_clear_snapshot(self) -> None:
        await self.persistence.clear_snapshot()

    def location_filter_options(self) -> LocationOptions:
        return filter_options(self.store, self.location_filter)

    def on_location_filter(self, criteria: LocationFilter) -> int:
        """Hide members outside the given location. Returns the visible count."""
        self.location_filter = criteria
        visible = self.push_points()
        self.events.set_value("location.filter", criteria)
        logger.info("Location filter %s: %d of %d visible", criteria.model_dump(), visible, len(self.store))
        return visible

    def on_frame(self, now: Optional[float] = None) -> None:
        """Per-frame callback: travel, decoration refresh and point upload."""
        self.frame += 1
        self.selection.tick(now)
        self.decorations.on_frame(self.frame, now if now is not None else time.monotonic(), self.selection.panel_open)
        if self._points_dirty:
            self.push_points()

    # ─────────────────────── jobs / deep links ────────────────────────────

    def start_load_job(self) -> JobRecord:
        running = self.jobs.running(JOB_TYPE)
        if running:
            return running[0]
        job = self.jobs.start("Load Real Data", JOB_TYPE)
        self._load_task = asyncio.create_task(self._load(job.id))
        return job

    async def _load(self, job_id: int) -> None:
        await self.ingestion.run(job_id)
        self.push_points()
        if self.selection.pending_slug is not None:
            await self.resolve_deep_link()

    async def open_deep_link(self, slug: str) -> Optional[int]:
        self.selection.begin_deep_link(slug)
        await self.ingestion.bootstrap()
        return await self.resolve_deep_link()

    async def resolve_deep_link(self) -> Optional[int]:
        slug = self.selection.pending_slug
        if slug is None:
            return None
        token = self.selection.dataset_available()
        if token is not None:
            return token
        member_id = await self.resolve_member(slug)
        if member_id is None:
            return None
        return self.selection.dataset_available(member_id)

    async def resolve_member(self, slug: str) -> Optional[str]:
        """Store first (id, then username), then the last search, then the remote."""
        member_id = self.store.resolve_slug(slug)
        if member_id is not None:
            return member_id
        result = self.search.find(slug)
        if result is not None:
            return self.search.adopt(result)
        try:
            user = await self.remote.find_user(slug)
        except (RemoteServiceError, TransientNetworkError) as exc:
            logger.warning("Remote lookup for %r failed: %s", slug, exc)
            return None
        if user is None:
            return None
        self._append_user(user)
        return user["id"]

    def _append_user(self, user: dict) -> None:
        days = sobriety_days_since(user.get("sobriety_date"))
        score = risk_score_for(days, 0)
        comments = user.get("total_comments")
        self.store.append(
            user["id"],
            position=self.layout.seed_to_pos(user["id"], FALLBACK_RADIUS),
            color=risk_color(score / 100),
            size=member_size(comments or 0),
            activity_score=activity_score(0),
            username=user.get("username") or "anon",
            profile_image_ref=user.get("profile_image_ref"),
            sobriety_date=user.get("sobriety_date"),
            sobriety_days=days,
            total_comments=comments,
            risk_score=score,
            risk_level=risk_level(score),
            cluster_label="Deep Link",
            region=user.get("region"),
            city=user.get("city"),
            country=user.get("country"),
        )
        self._points_dirty = True
        logger.info("Added %s on demand", user["id"])

    # ─────────────────────── rendering ────────────────────────────────────

    def push_points(self) -> int:
        """Upload the member points, minus those hidden by the location filter."""
        if is_active(self.location_filter):
            slots = visible_slots(self.store, self.location_filter)
            points = PointSet(
                positions=self.store.positions[slots],
                colors=self.store.colors[slots],
                sizes=self.store.sizes[slots],
                indices=self.store.indices[slots],
            )
        else:
            points = PointSet(
                positions=self.store.positions.copy(),
                colors=self.store.colors.copy(),
                sizes=self.store.sizes.copy(),
                indices=self.store.indices.copy(),
            )
        self.render.set_points(points)
        self._points_dirty = False
        return len(points.sizes)
