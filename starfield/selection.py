"""
Selection / travel state machine.

  Idle ──select──► PanelOpening ──position──► Traveling ──arrive──► Selected
    ▲                   │ (deep link: waits for the dataset)           │
    └──────── close / deep-link timeout ◄───── Closing ◄───────────────┘

`select()` is legal from every state. It issues a new generation, which
cancels the previous selection's travel and decoration tasks, and releases
whatever was drawn for it. Decorations load only once travel arrives, under
the generation captured at `select()` time.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from starfield.config import settings
from starfield.decorations import DecorationLoader
from starfield.entity_store import EntityStore
from starfield.errors import NotFoundError
from starfield.events import EventBus
from starfield.guard import GenerationGuard
from starfield.presentation import initials, risk_explanation
from starfield.schemas import MemberDetail, Vector3

logger = logging.getLogger(__name__)

GOD_VIEW: Vector3 = (120.0, 0.0, 80.0)
ORIGIN: Vector3 = (0.0, 0.0, 0.0)
NEAR_CENTRE_OFFSET: Vector3 = (1.0, 1.0, 5 / 3)


class SelectionState(str, Enum):
    IDLE = "idle"
    PANEL_OPENING = "panel_opening"
    TRAVELING = "traveling"
    SELECTED = "selected"
    CLOSING = "closing"


def ease_out_cubic(t: float) -> float:
    return 1 - (1 - t) ** 3


def _lerp(a: Vector3, b: Vector3, t: float) -> Vector3:
    return (a[0] + (b[0] - a[0]) * t, a[1] + (b[1] - a[1]) * t, a[2] + (b[2] - a[2]) * t)


def _distance(a: Vector3, b: Vector3) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def camera_goal(target: Vector3, distance: Optional[float] = None) -> Vector3:
    """Camera position looking at `target` from outside, along its radial direction."""
    distance = distance or settings.camera_distance_from_member
    norm = math.sqrt(sum(v * v for v in target))
    if norm < 1e-3:
        return (target[0] + NEAR_CENTRE_OFFSET[0], target[1] + NEAR_CENTRE_OFFSET[1], target[2] + NEAR_CENTRE_OFFSET[2])
    return tuple(v + v / norm * distance for v in target)


@dataclass
class Camera:
    position: Vector3 = GOD_VIEW
    target: Vector3 = ORIGIN


@dataclass
class Travel:
    start_position: Vector3
    start_target: Vector3
    end_position: Vector3
    end_target: Vector3
    started_at: float
    duration: float

    def progress(self, now: float) -> float:
        if self.duration <= 0:
            return 1.0
        return min(max((now - self.started_at) / self.duration, 0.0), 1.0)

    def camera_at(self, now: float) -> Camera:
        t = ease_out_cubic(self.progress(now))
        return Camera(
            position=_lerp(self.start_position, self.end_position, t),
            target=_lerp(self.start_target, self.end_target, t),
        )


class SelectionFSM:
    def __init__(
        self,
        store: EntityStore,
        decorations: DecorationLoader,
        guard: GenerationGuard,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        travel_duration: Optional[float] = None,
        profile_priority_delay: Optional[float] = None,
    ) -> None:
        self.store = store
        self.decorations = decorations
        self.guard = guard
        self.events = events or EventBus()
        self._clock = clock
        self._sleep = sleep
        self.travel_duration = settings.travel_duration if travel_duration is None else travel_duration
        self.profile_priority_delay = (
            settings.profile_priority_delay if profile_priority_delay is None else profile_priority_delay
        )

        self.state = SelectionState.IDLE
        self.selected_id: Optional[str] = None
        self.token: Optional[int] = None
        self.camera = Camera()
        self.travel: Optional[Travel] = None
        self.pending_slug: Optional[str] = None
        self._deep_link_started: Optional[float] = None
        self._progress = 0.0

    def _set_state(self, state: SelectionState) -> None:
        self.state = state
        self.events.set_value("selection.state", state.value)
        self.events.set_visible("detail_panel", state not in (SelectionState.IDLE, SelectionState.CLOSING))

    @property
    def panel_open(self) -> bool:
        return self.state not in (SelectionState.IDLE, SelectionState.CLOSING)

    @property
    def travel_progress(self) -> float:
        return self._progress

    # ─────────────────────── transitions ──────────────────────────────────

    def select(self, member_id: str, travel_duration: Optional[float] = None, from_view: Optional[Camera] = None) -> int:
        """Select a member already in the store. Returns its generation token."""
        member = self.store.get(member_id)
        if member is None:
            raise NotFoundError(f"member {member_id} is not loaded")

        token = self.guard.issue()
        self.token = token
        self.decorations.attach(member_id)
        self.selected_id = member_id
        self.pending_slug = None
        self._deep_link_started = None
        self._set_state(SelectionState.PANEL_OPENING)
        self.events.set_value("selection.detail", self.detail())

        target = member.position or ORIGIN
        goal = Camera(position=camera_goal(target), target=target)
        start = from_view or self.camera
        duration = self.travel_duration if travel_duration is None else travel_duration

        if from_view is None and _distance(start.target, target) < settings.reselect_travel_skip_distance:
            # Close enough to the current focus: no camera flight
            self.camera = goal
            self.travel = None
            self._arrive(token)
            return token

        self.travel = Travel(
            start_position=start.position,
            start_target=start.target,
            end_position=goal.position,
            end_target=goal.target,
            started_at=self._clock(),
            duration=duration,
        )
        self._progress = 0.0
        self.camera = start
        self._set_state(SelectionState.TRAVELING)
        logger.debug("Travelling to %s (generation %d)", member_id, token)
        return token

    def tick(self, now: Optional[float] = None) -> SelectionState:
        """Advance travel and the deep-link wait. Called once per frame."""
        now = self._clock() if now is None else now
        if self.state is SelectionState.TRAVELING and self.travel is not None:
            progress = self.travel.progress(now)
            # progress is monotonic within one travel
            self._progress = max(self._progress, progress)
            self.camera = self.travel.camera_at(now)
            if self._progress >= 1.0:
                self.travel = None
                self._arrive(self.token)
        elif (
            self.state is SelectionState.PANEL_OPENING
            and self.pending_slug is not None
            and self._deep_link_started is not None
            and now - self._deep_link_started >= settings.deep_link_max_wait
        ):
            logger.info("Deep link %r not resolved in time, falling back to default view", self.pending_slug)
            self.pending_slug = None
            self._deep_link_started = None
            self.camera = Camera()
            self._set_state(SelectionState.IDLE)
        return self.state

    def _arrive(self, token: int) -> None:
        self._progress = 1.0
        self._set_state(SelectionState.SELECTED)
        member_id = self.selected_id
        self.guard.spawn(self._load_profile(member_id, token), token)
        self.guard.spawn(self._load_decorations(member_id, token), token)

    async def _load_profile(self, member_id: str, token: int) -> None:
        handle = await self.decorations.resolve_profile_image(member_id, token)
        self.guard.check(token)
        self.events.set_value("selection.profile_image", handle.url if handle else None)

    async def _load_decorations(self, member_id: str, token: int) -> None:
        # The profile image gets the network first
        if self.profile_priority_delay > 0:
            await self._sleep(self.profile_priority_delay)
        self.guard.check(token)
        await self.decorations.load(member_id, token)
        self.guard.check(token)
        self.events.set_value("selection.detail", self.detail())

    def close(self) -> None:
        if self.state is SelectionState.IDLE and self.pending_slug is None:
            return
        self._set_state(SelectionState.CLOSING)
        self.token = self.guard.issue()
        self.travel = None
        self.decorations.release()
        self.selected_id = None
        self.pending_slug = None
        self._deep_link_started = None
        self._set_state(SelectionState.IDLE)
        self.events.set_value("selection.detail", None)

    # ─────────────────────── deep links ───────────────────────────────────

    def begin_deep_link(self, slug: str, now: Optional[float] = None) -> None:
        """Open the panel before the dataset exists and hold the target slug."""
        self.guard.issue()
        self.pending_slug = slug
        self._deep_link_started = self._clock() if now is None else now
        self._set_state(SelectionState.PANEL_OPENING)

    def dataset_available(self, member_id: Optional[str] = None) -> Optional[int]:
        """Resolve the pending slug (or take `member_id`) and select on success."""
        if self.pending_slug is None:
            return None
        member_id = member_id or self.store.resolve_slug(self.pending_slug)
        if member_id is None:
            return None
        return self.select(
            member_id,
            travel_duration=settings.deep_link_travel_duration,
            from_view=Camera(position=GOD_VIEW, target=ORIGIN),
        )

    # ─────────────────────── read model ───────────────────────────────────

    def detail(self) -> Optional[MemberDetail]:
        if self.selected_id is None:
            return None
        member = self.store.get(self.selected_id)
        if member is None:
            return None
        current = self.decorations.current
        same = current.member_id == self.selected_id
        posts = current.posts.posts if same and current.posts else []
        return MemberDetail(
            member=member,
            risk_explanation=(
                risk_explanation(member.sobriety_days, member.activity, member.risk_score)
                if member.risk_level == "high"
                else None
            ),
            initials=initials(member.username),
            beams_count=current.comment_count if same else 0,
            planets_count=len(posts),
            supporters=list(current.supporters) if same else [],
        )
