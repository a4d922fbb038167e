"""
Decorations drawn around the selected member.

  Planets — the member's posts, on non-overlapping orbits bounded by the
            nearest neighbouring point. The first `planet_sprite_lod` are
            sprites (with images); the rest are merged into one point set.
  Beams   — engagement edges to the members whose posts this member
            commented on. Comments are paged by created-at cursor and beams
            are added in batches as pages arrive; only the LOD cap is drawn.

Every loader takes the generation token of the selection that asked for it
and re-checks it after each await, before touching caches-visible state or
the render target.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

import numpy as np
from opentelemetry import trace

from starfield import lod
from starfield.cache import CacheLayer, ImageHandle
from starfield.clients.remote_client import QueryShape, RemoteClient
from starfield.config import settings
from starfield.entity_store import EntityStore
from starfield.errors import RemoteServiceError, StarfieldError, TransientNetworkError
from starfield.guard import GenerationGuard, InFlightRegistry
from starfield.render import PointSet, RenderTarget, Sprite, empty_lines, line_set
from starfield.schemas import BeamData, EngagementComment, Post, PostSet, Vector3

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

GOLDEN_ANGLE = math.pi * (3 - math.sqrt(5))
DEFAULT_SAFE_RADIUS = 2.5
MAX_SAFE_RADIUS = 2.8
NEIGHBOUR_SAMPLE = 2000

PLANETS = "planets"
PLANETS_MERGED = "planets.merged"
BEAMS = "beams"


# ─────────────────────────── Planets ──────────────────────────────────────

@dataclass
class Planet:
    post_id: str
    orbit_radius: float
    size: float
    phase: float
    speed: float
    tilt: float
    image_ref: Optional[str] = None


def _created_ts(post: Post) -> float:
    if not post.created_at:
        return 0.0
    try:
        return datetime.fromisoformat(post.created_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return 0.0


def safe_orbit_radius(store: EntityStore, slot: int) -> float:
    """55% of the way to the nearest neighbour, sampled on large stores."""
    positions = store.positions
    n = len(positions)
    if n < 2:
        return DEFAULT_SAFE_RADIUS
    step = max(1, n // NEIGHBOUR_SAMPLE)
    sample = positions[::step]
    mask = np.arange(0, n, step) != slot
    if not mask.any():
        return DEFAULT_SAFE_RADIUS
    dists = np.linalg.norm(sample[mask] - positions[slot], axis=1)
    return min(float(dists.min()) * 0.55, MAX_SAFE_RADIUS)


def plan_orbits(posts: list[Post], host_size: float, max_safe: float) -> list[Planet]:
    """Earliest post innermost; consecutive shells never overlap."""
    ordered = sorted(posts, key=_created_ts)
    if not ordered:
        return []
    max_planet = min(0.25 + host_size * 0.015, 0.55)
    sizes = [min(0.18 + math.log(p.comment_count + 1) * 0.04, max_planet) for p in ordered]

    planets = []
    r = max_planet * 0.8 + sizes[0] / 2 + 0.15
    for i, (post, size) in enumerate(zip(ordered, sizes)):
        if i:
            prev = planets[-1]
            r = max(r, prev.orbit_radius + prev.size / 2 + size / 2 + 0.04)
        radius = min(r, max_safe - size / 2)
        planets.append(
            Planet(
                post_id=post.id,
                orbit_radius=radius,
                size=size,
                phase=i * GOLDEN_ANGLE,
                speed=0.35 / math.sqrt(max(radius, 0.1)),
                tilt=((i * 37) % 60 - 30) / 180 * math.pi * 0.25,
                image_ref=post.image_ref,
            )
        )
        r = radius + size / 2
    return planets


def orbit_position(host: Vector3, planet: Planet, t: float) -> Vector3:
    angle = planet.phase + planet.speed * t
    x = math.cos(angle) * planet.orbit_radius
    z = math.sin(angle) * planet.orbit_radius
    return (host[0] + x, host[1] + z * math.sin(planet.tilt), host[2] + z * math.cos(planet.tilt))


# ─────────────────────────── Beams ────────────────────────────────────────

@dataclass
class Beam:
    target_id: str
    target_slot: int
    count: int
    strength: float = 0.0


def beam_strength(count: int, max_count: int) -> float:
    return math.log1p(count) / math.log1p(max(max_count, 1))


def engagement_from(comments: list[dict], post_creators: dict[str, str], member_id: str) -> dict[str, int]:
    """Comments on other members' posts, counted per post creator."""
    counts: dict[str, int] = {}
    for c in comments:
        creator = post_creators.get(c.get("post_id") or "")
        if creator and creator != member_id:
            counts[creator] = counts.get(creator, 0) + 1
    return counts


def ranked_targets(store: EntityStore, engagement: dict[str, int]) -> list[Beam]:
    beams = []
    for target_id, count in engagement.items():
        slot = store.slot_of(target_id)
        if slot is not None:
            beams.append(Beam(target_id, slot, count))
    beams.sort(key=lambda b: (-b.count, b.target_id))
    return beams


def top_supporters(store: EntityStore, engagement: dict[str, int], n: Optional[int] = None) -> list[str]:
    n = n or settings.supporter_count
    ranked = sorted(engagement.items(), key=lambda kv: (-kv[1], kv[0]))[:n]
    names = []
    for member_id, _ in ranked:
        member = store.get(member_id)
        names.append(member.username if member else "user_" + member_id[:5])
    return names


@dataclass
class DecorationState:
    member_id: Optional[str] = None
    host_slot: Optional[int] = None
    posts: Optional[PostSet] = None
    planets: list[Planet] = field(default_factory=list)
    beams: list[Beam] = field(default_factory=list)
    engagement: dict[str, int] = field(default_factory=dict)
    comment_count: int = 0
    supporters: list[str] = field(default_factory=list)


class DecorationLoader:
    def __init__(
        self,
        store: EntityStore,
        remote: RemoteClient,
        caches: CacheLayer,
        render: RenderTarget,
        guard: GenerationGuard,
        on_engagement: Optional[Callable[[str, list[EngagementComment]], None]] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.caches = caches
        self.render = render
        self.guard = guard
        self.on_engagement = on_engagement
        self.in_flight = InFlightRegistry()
        self.current = DecorationState()

    # ─────────────────────── lifecycle ────────────────────────────────────

    def attach(self, member_id: str) -> None:
        self.release()
        self.current = DecorationState(member_id=member_id, host_slot=self.store.slot_of(member_id))

    def release(self) -> None:
        """Drop everything drawn for the previous selection."""
        self.current = DecorationState()
        self.render.set_sprites(PLANETS, [])
        self.render.set_points(_empty_points(), PLANETS_MERGED)
        self.render.set_lines(BEAMS, empty_lines())

    async def load(self, member_id: str, token: int) -> DecorationState:
        """Posts then engagement for `member_id`, under generation `token`."""
        with tracer.start_as_current_span("decorations.load") as span:
            span.set_attribute("member.id", member_id)
            await self.load_planets(member_id, token)
            await self.load_beams(member_id, token)
        return self.current

    # ─────────────────────── planets ──────────────────────────────────────

    async def fetch_posts(self, member_id: str, token: int) -> Optional[PostSet]:
        cached = self.caches.posts.get(member_id)
        if cached is not None:
            return cached
        with self.in_flight.claim(("posts", member_id)) as claimed:
            if not claimed:
                return None
            posts: list[Post] = []
            shape = QueryShape.PRIMARY
            skip = 0
            capped = False
            page_size = settings.post_page_size
            while True:
                try:
                    page = await self.remote.fetch_member_posts(member_id, skip, page_size, shape)
                except StarfieldError:
                    if skip == 0 and shape is QueryShape.PRIMARY:
                        shape = QueryShape.FALLBACK
                        continue
                    if skip == 0:
                        raise
                    break
                self.guard.check(token)
                if not page and skip == 0 and shape is QueryShape.PRIMARY:
                    shape = QueryShape.FALLBACK
                    continue
                posts.extend(Post(**{k: v for k, v in p.items() if k in Post.model_fields}) for p in page)
                if len(posts) >= settings.max_posts_fetch:
                    posts = posts[: settings.max_posts_fetch]
                    capped = True
                    break
                if len(page) < page_size:
                    break
                skip += len(page)
            post_set = PostSet(member_id=member_id, posts=posts, capped=capped)
            self.caches.store_posts(member_id, post_set)
            return post_set

    async def load_planets(self, member_id: str, token: int) -> list[Planet]:
        try:
            post_set = await self.fetch_posts(member_id, token)
        except (RemoteServiceError, TransientNetworkError) as exc:
            logger.warning("Post loading failed for %s: %s", member_id, exc)
            post_set = None
        self.guard.check(token)
        if post_set is None:
            return []
        slot = self.store.slot_of(member_id)
        self.current.posts = post_set
        if slot is None or not post_set.posts:
            return []
        max_safe = safe_orbit_radius(self.store, slot)
        self.current.planets = plan_orbits(post_set.posts, float(self.store.sizes[slot]), max_safe)
        self.draw_planets(0.0)
        return self.current.planets

    def draw_planets(self, t: float) -> None:
        slot = self.current.host_slot
        if slot is None or not self.current.planets:
            return
        host = tuple(float(v) for v in self.store.positions[slot])
        sprites, merged = lod.partition_decorations(self.current.planets)
        self.render.set_sprites(
            PLANETS,
            [
                Sprite(key=p.post_id, position=orbit_position(host, p, t), scale=p.size, texture=p.image_ref)
                for p in sprites
            ],
        )
        if merged:
            positions = np.asarray([orbit_position(host, p, t) for p in merged], dtype=np.float32)
            n = len(merged)
            self.render.set_points(
                PointSet(
                    positions=positions,
                    colors=np.ones((n, 3), dtype=np.float32),
                    sizes=np.asarray([p.size for p in merged], dtype=np.float32),
                    indices=np.arange(n, dtype=np.float32),
                ),
                PLANETS_MERGED,
            )

    # ─────────────────────── beams ────────────────────────────────────────

    async def _resolve_creators(self, post_ids: list[str], known: dict[str, str]) -> None:
        missing = []
        for pid in post_ids:
            if pid in known:
                continue
            post = self.caches.post_data.get(pid)
            if post is not None:
                known[pid] = post.creator_id
            else:
                missing.append(pid)
        for i in range(0, len(missing), settings.post_chunk):
            chunk = missing[i : i + settings.post_chunk]
            try:
                known.update(await self.remote.fetch_post_creators(chunk))
            except (RemoteServiceError, TransientNetworkError) as exc:
                logger.debug("Post creator lookup failed for %d posts: %s", len(chunk), exc)

    async def fetch_engagement(self, member_id: str, token: int) -> Optional[BeamData]:
        cached = self.caches.beams.get(member_id)
        if cached is not None:
            return cached
        with self.in_flight.claim(("beams", member_id)) as claimed:
            if not claimed:
                return None
            comments: list[dict] = []
            creators: dict[str, str] = {}
            shape = QueryShape.PRIMARY
            after: Optional[str] = None
            drawn: set[str] = set()
            while True:
                page_size = lod.comment_page_size(len(comments))
                try:
                    page = await self.remote.fetch_member_comments(member_id, after, page_size, shape)
                except (RemoteServiceError, TransientNetworkError) as exc:
                    logger.debug("Comment page failed for %s: %s", member_id, exc)
                    break
                self.guard.check(token)
                if not page and shape is QueryShape.PRIMARY and after is None:
                    shape = QueryShape.FALLBACK
                    continue
                if not page:
                    break
                comments.extend(page)
                after = page[-1].get("created_at")

                await self._resolve_creators(
                    list(dict.fromkeys(c["post_id"] for c in page if c.get("post_id"))), creators
                )
                self.guard.check(token)
                engagement = engagement_from(comments, creators, member_id)
                self._add_beam_batch(engagement, drawn)

                if not after or len(page) < page_size or len(comments) >= settings.max_comments:
                    break

            engagement = engagement_from(comments, creators, member_id)
            data = BeamData(
                member_id=member_id,
                engagement_count=engagement,
                post_creator_map=creators,
                comment_count=len(comments),
                comments_for_layout=[
                    EngagementComment(from_member=member_id, to_member=creators[c["post_id"]], post_id=c["post_id"])
                    for c in comments
                    if creators.get(c.get("post_id") or "") not in (None, member_id)
                ],
            )
            if comments:
                self.caches.beams.set(member_id, data)
                if self.on_engagement is not None:
                    self.on_engagement(member_id, data.comments_for_layout)
            return data

    def _add_beam_batch(self, engagement: dict[str, int], drawn: set[str]) -> None:
        """Draw up to one batch of not-yet-drawn targets within the LOD cap."""
        targets = ranked_targets(self.store, engagement)
        capped = targets[: lod.beam_segment_cap(len(targets))]
        batch = [b for b in capped if b.target_id not in drawn][: settings.beam_batch_size]
        self.current.engagement = engagement
        if not batch:
            return
        drawn.update(b.target_id for b in batch)
        by_id = {b.target_id: b for b in self.current.beams}
        by_id.update({b.target_id: b for b in batch})
        for b in by_id.values():
            b.count = engagement.get(b.target_id, b.count)
        self.current.beams = sorted(by_id.values(), key=lambda b: (-b.count, b.target_id))
        self._restrength()
        self.draw_beams()

    def _restrength(self) -> None:
        max_count = max((b.count for b in self.current.beams), default=1)
        for b in self.current.beams:
            b.strength = beam_strength(b.count, max_count)

    async def load_beams(self, member_id: str, token: int) -> list[Beam]:
        data = await self.fetch_engagement(member_id, token)
        self.guard.check(token)
        if data is None:
            return []
        targets = ranked_targets(self.store, data.engagement_count)
        self.current.beams = targets[: lod.beam_segment_cap(len(targets))]
        self.current.engagement = data.engagement_count
        self.current.comment_count = data.comment_count
        self.current.supporters = top_supporters(self.store, data.engagement_count)
        self._restrength()
        self.draw_beams()
        return self.current.beams

    def draw_beams(self) -> None:
        slot = self.current.host_slot
        if slot is None or not self.current.beams:
            self.render.set_lines(BEAMS, empty_lines())
            return
        positions = self.store.positions
        source = tuple(float(v) for v in positions[slot])
        segments = [(source, tuple(float(v) for v in positions[b.target_slot])) for b in self.current.beams]
        self.render.set_lines(BEAMS, line_set(segments, [b.strength for b in self.current.beams]))

    # ─────────────────────── frame updates ────────────────────────────────

    def on_frame(self, frame: int, t: float, panel_open: bool) -> None:
        if self.current.planets and lod.should_update(frame, lod.heavy_update_interval(panel_open)):
            self.draw_planets(t)
        if self.current.beams and lod.should_update(
            frame, lod.beam_update_interval(panel_open, len(self.current.beams))
        ):
            self.draw_beams()

    # ─────────────────────── profile images ───────────────────────────────

    async def resolve_profile_image(self, member_id: str, token: Optional[int] = None) -> Optional[ImageHandle]:
        """
        Decoded profile image for the detail panel, or None when the member
        has none; the caller then draws initials.
        """
        url = self.caches.profile_pics.get(member_id, default=False)
        if url is False:
            member = self.store.get(member_id)
            url = member.profile_image_ref if member else None
            if url is None:
                try:
                    url = await self.remote.fetch_profile_picture(member_id)
                except StarfieldError as exc:
                    logger.debug("Profile picture lookup failed for %s: %s", member_id, exc)
                    return None
            self.caches.profile_pics.set(member_id, url)
            if url and member is not None and not member.profile_image_ref:
                self.store.update(member_id, {"profile_image_ref": url})
        if not url:
            return None
        handle = self.caches.images.get(url)
        if handle is not None:
            return handle
        with self.in_flight.claim(("image", url)) as claimed:
            if not claimed:
                return None
            try:
                data = await self.remote.fetch_image(url)
            except StarfieldError as exc:
                logger.debug("Image fetch failed for %s: %s", url, exc)
                return None
        if token is not None:
            self.guard.check(token)
        handle = ImageHandle(url, data)
        self.caches.images.set(url, handle)
        return handle


def _empty_points() -> PointSet:
    return PointSet(
        positions=np.zeros((0, 3), dtype=np.float32),
        colors=np.zeros((0, 3), dtype=np.float32),
        sizes=np.zeros(0, dtype=np.float32),
        indices=np.zeros(0, dtype=np.float32),
    )
