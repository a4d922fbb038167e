"""
Ingestion controller — resumable paginated load of the member universe.

  Idle ─► FetchingPage ─► Merging ─► FetchingPage …
                │             │
                ▼             ▼
              Error        Complete   (a page yielded zero new members)

One `run()` fetches at most `max_pages_per_run` pages, each a user page plus a
post page and a comment page at the same cursor. Pages are merged strictly one
after another. After every merge the cursor is persisted, so a crash resumes
at the last merged page. Unfinished work reschedules itself after a fixed
delay.

Positions: members that already have a slot keep their position through
incremental runs. Only when the cursor is complete does a full relayout over
the whole dataset move existing points.
"""
import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from opentelemetry import trace

from starfield.cache import CacheLayer
from starfield.clients.remote_client import QueryShape, RemoteClient
from starfield.config import settings
from starfield.entity_store import EntityStore
from starfield.errors import StarfieldError
from starfield.events import EventBus
from starfield.jobs import JobBoard
from starfield.layout import LayoutOracle, LayoutState
from starfield.persistence import SnapshotPersistence
from starfield.presentation import (
    activity_score,
    member_size,
    risk_color,
    risk_level,
    risk_score_for,
    sobriety_days_since,
)
from starfield.schemas import EngagementComment, IngestionCursor, Vector3
from starfield.telemetry import INGESTION_MEMBERS_TOTAL, INGESTION_PAGES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FALLBACK_RADIUS = 80.0
JOB_TYPE = "data-load"


class IngestionState(str, Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    MERGING = "merging"
    COMPLETE = "complete"
    ERROR = "error"


def stub_username(member_id: str) -> str:
    return "user_" + str(member_id)[:5]


class IngestionController:
    def __init__(
        self,
        store: EntityStore,
        remote: RemoteClient,
        persistence: SnapshotPersistence,
        layout: LayoutOracle,
        jobs: JobBoard,
        caches: Optional[CacheLayer] = None,
        events: Optional[EventBus] = None,
        user_page_size: Optional[int] = None,
        post_page_size: Optional[int] = None,
        comment_page_size: Optional[int] = None,
        max_members: Optional[int] = None,
        max_pages_per_run: Optional[int] = None,
        page_delay: Optional[float] = None,
        reschedule_delay: Optional[float] = None,
        auto_reschedule: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.remote = remote
        self.persistence = persistence
        self.layout = layout
        self.jobs = jobs
        self.caches = caches
        self.events = events or EventBus()
        self.user_page_size = user_page_size or settings.ingest_user_page_size
        self.post_page_size = post_page_size or settings.ingest_post_page_size
        self.comment_page_size = comment_page_size or settings.ingest_comment_page_size
        self.max_members = max_members or settings.ingest_max_members
        self.max_pages_per_run = max_pages_per_run or settings.ingest_max_pages_per_run
        self.page_delay = settings.ingest_page_delay if page_delay is None else page_delay
        self.reschedule_delay = (
            settings.ingest_reschedule_delay if reschedule_delay is None else reschedule_delay
        )
        self.auto_reschedule = auto_reschedule
        self._clock = clock
        self._sleep = sleep

        self.state = IngestionState.IDLE
        self.cursor = IngestionCursor()
        self.layout_state: LayoutState = layout.create_state()
        self.snapshot_timestamp: Optional[float] = None
        self._bootstrapped = False
        self._first_page_of_session = True
        self._activity: dict[str, int] = {}
        self._pending_engagement: list[EngagementComment] = []
        self._lock = asyncio.Lock()
        self._reschedule_task: Optional[asyncio.Task] = None

    def _set_state(self, state: IngestionState) -> None:
        self.state = state
        self.events.set_value("ingestion.state", state.value)

    # ─────────────────────── session start ────────────────────────────────

    async def bootstrap(self) -> int:
        """
        Restore the last snapshot if one is usable. When no snapshot was ever
        written (a crash before the first save), an unfinished saved cursor is
        resumed so completed pages are not fetched again. A rejected snapshot,
        or a complete or unreadable cursor, starts the session fresh.
        Returns the number of restored members.
        """
        if self._bootstrapped:
            return 0
        self._bootstrapped = True
        snap = await self.persistence.load()
        restored = 0
        if snap is not None and len(self.store) == 0:
            restored = self.persistence.restore(snap, self.store)
            if restored:
                self.snapshot_timestamp = snap.timestamp
                self.cursor = snap.skips.model_copy()
                for m in snap.members:
                    self.layout_state.add_member(m.id, m.username)
                if self.caches is not None:
                    await self.persistence.restore_nav_cache(self.caches)
        if not restored:
            saved = None
            if snap is None and not await self.persistence.has_stored_snapshot():
                saved = await self.persistence.load_cursor()
            if saved is not None and not saved.is_complete:
                self.cursor = saved
                logger.info(
                    "No snapshot, resuming from saved cursor (user_skip=%d, %d members)",
                    saved.user_skip, saved.total_members,
                )
            else:
                self.cursor = IngestionCursor()
                await self.persistence.clear_cursor()
        self._publish_counts()
        return restored

    # ─────────────────────── one invocation ───────────────────────────────

    async def run(self, job_id: Optional[int] = None) -> IngestionState:
        """
        Run one bounded ingestion invocation. Never raises: failures become
        the ERROR state and an 'error' job status.
        """
        if self._lock.locked():
            logger.info("Ingestion already running, ignoring duplicate request")
            return self.state
        async with self._lock:
            job = self.jobs.get(job_id) if job_id is not None else None
            if job is None:
                job = self.jobs.start("Load Real Data", JOB_TYPE)
            with tracer.start_as_current_span("ingestion.run") as span:
                try:
                    await self._run(job.id)
                except StarfieldError as exc:
                    self._fail(job.id, exc)
                except Exception as exc:
                    logger.exception("Unexpected ingestion failure")
                    self._fail(job.id, exc)
                span.set_attribute("ingestion.state", self.state.value)
                span.set_attribute("ingestion.total_members", self.cursor.total_members)
        if self.state is IngestionState.IDLE and self.auto_reschedule:
            self._schedule_next()
        return self.state

    def _fail(self, job_id: int, exc: Exception) -> None:
        # Cursor on disk is already the last merged page
        self._set_state(IngestionState.ERROR)
        self.jobs.update(job_id, progress=0.0)
        self.jobs.fail(job_id, f"Error: {exc}")

    async def _run(self, job_id: int) -> None:
        await self.bootstrap()
        self._merge_pending_engagement()

        if self.cursor.is_complete:
            if self.snapshot_timestamp is not None and self.persistence.is_fresh(self.snapshot_timestamp):
                self._set_state(IngestionState.COMPLETE)
                self.jobs.complete(job_id, "Universe fully loaded from snapshot")
                return
            # Stale: look for members added since the last complete load
            self.cursor.is_complete = False

        self.jobs.update(
            job_id,
            progress=20.0 if self.snapshot_timestamp else 5.0,
            message=(
                f"Fetching new members (have {self.cursor.total_members:,})..."
                if self.cursor.total_members
                else "Starting fresh load..."
            ),
        )

        pages = 0
        while (
            not self.cursor.is_complete
            and self.cursor.total_members < self.max_members
            and pages < self.max_pages_per_run
        ):
            if pages:
                await self._sleep(self.page_delay)
            added = await self.fetch_and_merge()
            pages += 1
            self.jobs.update(
                job_id,
                progress=min(95.0, self.cursor.total_members / self.max_members * 100),
                message=f"Loaded {self.cursor.total_members} members (batch {pages}, +{added} new)...",
            )

        if self.cursor.is_complete:
            self.jobs.update(job_id, progress=90.0, message="Computing spatial layout...")
            self._full_relayout()

        self.jobs.update(job_id, progress=97.0, message="Saving snapshot...")
        outcome = await self.persistence.save(self.store, self.cursor, self.caches)
        if outcome in ("full", "reduced"):
            self.snapshot_timestamp = self._clock()

        if self.cursor.is_complete:
            self._set_state(IngestionState.COMPLETE)
            self.jobs.complete(job_id, f"Loaded all {self.cursor.total_members} members")
        else:
            self._set_state(IngestionState.IDLE)
            self.jobs.complete(
                job_id, f"Loaded {self.cursor.total_members} members (will continue on next run)"
            )
            self.jobs.update(job_id, progress=min(95.0, self.cursor.total_members / self.max_members * 100))

    # ─────────────────────── pages ────────────────────────────────────────

    async def _fetch_users(self) -> list[dict]:
        first = self._first_page_of_session and self.cursor.user_skip == 0
        try:
            users = await self.remote.fetch_user_page(
                self.cursor.user_skip, self.user_page_size, QueryShape.PRIMARY
            )
        except StarfieldError as exc:
            if not first:
                raise
            logger.warning("First user page failed (%s), retrying with fallback query shape", exc)
            users = []
        if not users and first:
            INGESTION_PAGES_TOTAL.labels(outcome="fallback").inc()
            logger.warning("First user page empty, retrying with fallback query shape")
            users = await self.remote.fetch_user_page(
                self.cursor.user_skip, self.user_page_size, QueryShape.FALLBACK
            )
        return users

    async def fetch_and_merge(self) -> int:
        """Fetch one page at the current cursor and merge it. Returns new members."""
        self._set_state(IngestionState.FETCHING_PAGE)
        # All three fetches settle before the first failure is re-raised
        results = await asyncio.gather(
            self._fetch_users(),
            self.remote.fetch_post_page(self.cursor.post_skip, self.post_page_size),
            self.remote.fetch_comment_page(self.cursor.comment_skip, self.comment_page_size),
            return_exceptions=True,
        )
        failure = next((r for r in results if isinstance(r, BaseException)), None)
        if failure is not None:
            INGESTION_PAGES_TOTAL.labels(outcome="error").inc()
            raise failure
        users, posts, comments = results
        self._first_page_of_session = False

        self._set_state(IngestionState.MERGING)
        added = self.merge_page(users, posts, comments)

        self.cursor.user_skip += len(users)
        self.cursor.post_skip += len(posts)
        self.cursor.comment_skip += len(comments)
        self.cursor.total_members += added
        self.cursor.last_update = self._clock()
        if added == 0:
            self.cursor.is_complete = True
        await self.persistence.save_cursor(self.cursor)

        INGESTION_PAGES_TOTAL.labels(outcome="merged" if added else "empty").inc()
        INGESTION_MEMBERS_TOTAL.inc(added)
        logger.debug(
            "Merged page: %d users, %d posts, %d comments, +%d members",
            len(users), len(posts), len(comments), added,
        )
        self._publish_counts()
        return added

    def merge_page(self, users: list[dict], posts: list[dict], comments: list[dict]) -> int:
        """Merge one page by id. Replaying a page adds nothing."""
        new_ids: dict[str, dict] = {}
        touched: set[str] = set()

        for u in users:
            mid = u["id"]
            fields = {
                "username": u.get("username") or "anon",
                "profile_image_ref": u.get("profile_image_ref"),
                "sobriety_date": u.get("sobriety_date"),
                "total_comments": u.get("total_comments"),
                "region": u.get("region"),
                "city": u.get("city"),
                "country": u.get("country"),
            }
            if mid in self.store:
                self._fill_from_user(mid, fields)
                touched.add(mid)
            elif mid in new_ids:
                new_ids[mid].update({k: v for k, v in fields.items() if v is not None})
            else:
                new_ids[mid] = fields
            self.layout_state.add_member(mid, fields["username"], fields["sobriety_date"])

        known_posts = self.layout_state.posts
        for p in posts:
            creator = p.get("creator_id")
            if not creator or p["id"] in known_posts:
                continue
            if creator not in self.store and creator not in new_ids:
                name = p.get("creator_username") or stub_username(creator)
                new_ids[creator] = {"username": name}
                self.layout_state.add_member(creator, name)
            self.layout_state.add_post(p["id"], creator, p.get("comment_count", 0))
            self._activity[creator] = self._activity.get(creator, 0) + 1
            touched.add(creator)

        for c in comments:
            author, post_id = c.get("creator"), c.get("post_id")
            if not author or not post_id or c["id"] in self.layout_state.comments:
                continue
            post = known_posts.get(post_id)
            if post is None:
                continue
            if author not in self.store and author not in new_ids:
                new_ids[author] = {"username": stub_username(author)}
                self.layout_state.add_member(author, stub_username(author))
            self.layout_state.add_comment(c["id"], author, post_id)
            self._activity[author] = self._activity.get(author, 0) + 1
            touched.add(author)

        if new_ids:
            positions = self._positions_for(new_ids.keys())
            for mid, fields in new_ids.items():
                self._append(mid, positions[mid], fields)

        for mid in touched - set(new_ids):
            self._refresh_presentation(mid)
        return len(new_ids)

    # ─────────────────────── member writes ────────────────────────────────

    def _presentation(self, activity: int, sobriety_date: Optional[str], total_comments: Optional[int]) -> dict:
        days = sobriety_days_since(sobriety_date)
        score = risk_score_for(days, activity)
        return {
            "activity": activity,
            "activity_score": activity_score(activity),
            "sobriety_days": days,
            "risk_score": score,
            "risk_level": risk_level(score),
            "color": risk_color(score / 100),
            "size": member_size(total_comments if total_comments is not None else activity),
        }

    def _append(self, mid: str, position: Vector3, fields: dict) -> None:
        activity = self._activity.get(mid, 0)
        pres = self._presentation(activity, fields.get("sobriety_date"), fields.get("total_comments"))
        self.store.append(
            mid,
            position=position,
            color=pres.pop("color"),
            size=pres.pop("size"),
            activity_score=pres.pop("activity_score"),
            cluster_label="Real Data",
            **{k: v for k, v in fields.items() if v is not None},
            **pres,
        )

    def _fill_from_user(self, mid: str, fields: dict) -> None:
        """A real user row fills in what a stub or an earlier row lacked."""
        current = self.store.get(mid)
        update = {}
        if not current.profile_image_ref and fields["profile_image_ref"]:
            update["profile_image_ref"] = fields["profile_image_ref"]
        if not current.username or current.username.startswith("user_") or current.username == "Anonymous":
            update["username"] = fields["username"]
        if not current.sobriety_date and fields["sobriety_date"]:
            update["sobriety_date"] = fields["sobriety_date"]
        for key in ("region", "city", "country"):
            if fields.get(key) is not None:
                update[key] = fields[key]
        if fields["total_comments"] is not None:
            update["total_comments"] = fields["total_comments"]
        if update:
            self.store.update(mid, update)

    def _refresh_presentation(self, mid: str) -> None:
        current = self.store.get(mid)
        activity = self._activity.get(mid, current.activity)
        self.store.update(
            mid, self._presentation(activity, current.sobriety_date, current.total_comments)
        )

    # ─────────────────────── layout ───────────────────────────────────────

    def _positions_for(self, new_ids: Iterable[str]) -> dict[str, Vector3]:
        """
        Positions for members without a slot. The layout is consulted once
        the working set is large enough; existing members are never moved.
        """
        ids = list(new_ids)
        targets: dict[str, Vector3] = {}
        if len(self.layout_state.members) > settings.ingest_layout_min_members:
            targets = self.layout.evolve(self.layout_state)
        return {
            mid: targets.get(mid) or self.layout.seed_to_pos(mid, FALLBACK_RADIUS)
            for mid in ids
        }

    def _full_relayout(self) -> None:
        """Complete dataset: re-run the layout and move every member."""
        for mid in self.store.ids():
            if mid not in self.layout_state.members:
                member = self.store.get(mid)
                self.layout_state.add_member(mid, member.username, member.sobriety_date)
        if len(self.layout_state.members) <= settings.ingest_layout_min_members:
            return
        steps = 1 + (settings.ingest_refine_steps if self.layout_state.comments else 0)
        targets: dict[str, Vector3] = {}
        for _ in range(steps):
            targets = self.layout.evolve(self.layout_state)
        moved = 0
        for mid, position in targets.items():
            if mid in self.store:
                self.store.update(mid, {"position": position}, allow_relayout=True)
                moved += 1
        logger.info("Full relayout applied to %d members (%d steps)", moved, steps)

    # ─────────────────────── engagement feedback ──────────────────────────

    def feed_engagement(self, member_id: str, comments: list[EngagementComment]) -> None:
        """Engagement loaded for a selection is folded into the next layout run."""
        self._pending_engagement.extend(
            c for c in comments if c.from_member and c.to_member
        )
        logger.debug("Queued %d engagement edges from %s", len(comments), member_id)

    def _merge_pending_engagement(self) -> None:
        if not self._pending_engagement:
            return
        for i, c in enumerate(self._pending_engagement):
            post_id = c.post_id or f"beam_post_{c.to_member}"
            if post_id not in self.layout_state.posts:
                self.layout_state.add_post(post_id, c.to_member)
            self.layout_state.add_comment(f"beam_{c.from_member}_{i}_{post_id}", c.from_member, post_id)
        logger.debug("Merged %d engagement edges into layout state", len(self._pending_engagement))
        self._pending_engagement.clear()

    # ─────────────────────── scheduling / admin ───────────────────────────

    def _schedule_next(self) -> None:
        if self._reschedule_task is not None and not self._reschedule_task.done():
            return
        self._reschedule_task = asyncio.create_task(self._rescheduled())

    async def _rescheduled(self) -> None:
        await self._sleep(self.reschedule_delay)
        await self.run()

    def cancel_reschedule(self) -> None:
        if self._reschedule_task is not None and not self._reschedule_task.done():
            self._reschedule_task.cancel()
        self._reschedule_task = None

    async def reset(self) -> None:
        """Forget all progress: cursor, snapshot, mirror and the in-memory set."""
        self.cancel_reschedule()
        await self.persistence.reset()
        self.cursor = IngestionCursor()
        self.snapshot_timestamp = None
        self.store.clear()
        self.layout_state = self.layout.create_state()
        self._activity.clear()
        self._pending_engagement.clear()
        self._first_page_of_session = True
        self._bootstrapped = True
        self._set_state(IngestionState.IDLE)
        self._publish_counts()
        logger.info("Ingestion state reset")

    def _publish_counts(self) -> None:
        self.events.set_value("universe.count", len(self.store))
        self.events.set_value("universe.known", self.store.known_count)
