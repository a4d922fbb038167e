"""
Columnar entity store — the single source of truth for what is visible.

Layout:
  positions   float32 (capacity, 3)
  colors      float32 (capacity, 3)
  sizes       float32 (capacity,)
  activities  float32 (capacity,)
  indices     float32 (capacity,)   per-point index the renderer uses for picking

Only the first `len(store)` rows are live. Capacity doubles on overflow and
every column is reallocated together, then swapped in one assignment, so a
reader never sees two columns of different lengths.

Slots are append-only: an id keeps its slot for the whole session and a slot
is never handed to another id. Members beyond `max_slots` are still tracked
(for completeness accounting) but get no render slot.
"""
import logging
import re
from dataclasses import dataclass, field, fields as dataclass_fields
from typing import Iterator, Optional

import numpy as np

from starfield.config import settings
from starfield.schemas import Member, Vector3
from starfield.telemetry import STORE_SLOTS

logger = logging.getLogger(__name__)

_PLACEHOLDER_USERNAME = re.compile(r"^user\d+$")

# Fields that live in the numeric columns rather than the side table
_COLUMN_FIELDS = {"position", "color", "size", "activity_score"}


def is_indexable_username(username: Optional[str]) -> bool:
    """Placeholder names ('anonymous', 'user123') never resolve a deep link."""
    un = (username or "").strip().lower()
    return bool(un) and un != "anonymous" and not _PLACEHOLDER_USERNAME.match(un)


@dataclass
class _MemberRecord:
    id: str
    username: str = "Anonymous"
    profile_image_ref: Optional[str] = None
    risk_score: int = 50
    risk_level: str = "medium"
    activity: int = 0
    sobriety_days: int = 0
    sobriety_date: Optional[str] = None
    total_comments: Optional[int] = None
    cluster_label: str = "Real Data"
    region: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None
    slot: Optional[int] = None
    # Only used for members beyond the render cap (no buffer row)
    overflow: dict = field(default_factory=dict)


_RECORD_FIELDS = {f.name for f in dataclass_fields(_MemberRecord)} - {"id", "slot", "overflow"}


class EntityStore:
    def __init__(
        self,
        max_slots: Optional[int] = None,
        initial_capacity: int = 1024,
    ) -> None:
        self.max_slots = max_slots if max_slots is not None else settings.max_points_displayed
        self._length = 0
        self._initial_capacity = max(1, initial_capacity)
        self._allocate(self._initial_capacity)
        self._records: dict[str, _MemberRecord] = {}
        self._slot_ids: list[str] = []
        self._id_by_username: dict[str, str] = {}

    # ─────────────────────── buffers ──────────────────────────────────────

    def _allocate(self, capacity: int) -> None:
        self._capacity = capacity
        self._positions = np.zeros((capacity, 3), dtype=np.float32)
        self._colors = np.zeros((capacity, 3), dtype=np.float32)
        self._sizes = np.zeros(capacity, dtype=np.float32)
        self._activities = np.zeros(capacity, dtype=np.float32)
        self._indices = np.zeros(capacity, dtype=np.float32)

    def _grow(self, needed: int) -> None:
        capacity = self._capacity
        while capacity < needed:
            capacity *= 2
        n = self._length
        positions = np.zeros((capacity, 3), dtype=np.float32)
        colors = np.zeros((capacity, 3), dtype=np.float32)
        sizes = np.zeros(capacity, dtype=np.float32)
        activities = np.zeros(capacity, dtype=np.float32)
        indices = np.zeros(capacity, dtype=np.float32)
        positions[:n] = self._positions[:n]
        colors[:n] = self._colors[:n]
        sizes[:n] = self._sizes[:n]
        activities[:n] = self._activities[:n]
        indices[:n] = self._indices[:n]
        (
            self._capacity,
            self._positions,
            self._colors,
            self._sizes,
            self._activities,
            self._indices,
        ) = (capacity, positions, colors, sizes, activities, indices)
        logger.debug("Entity store grew to capacity %d", capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def positions(self) -> np.ndarray:
        return self._positions[: self._length]

    @property
    def colors(self) -> np.ndarray:
        return self._colors[: self._length]

    @property
    def sizes(self) -> np.ndarray:
        return self._sizes[: self._length]

    @property
    def activities(self) -> np.ndarray:
        return self._activities[: self._length]

    @property
    def indices(self) -> np.ndarray:
        return self._indices[: self._length]

    # ─────────────────────── writes ───────────────────────────────────────

    def append(
        self,
        member_id: str,
        position: Vector3,
        color: Vector3 = (1.0, 1.0, 1.0),
        size: float = 2.0,
        activity_score: float = 0.0,
        **metadata,
    ) -> Optional[int]:
        """
        Register a member and return its slot.

        Appending a known id is a no-op returning the existing slot. Past the
        render cap the member is tracked but None is returned.
        """
        existing = self._records.get(member_id)
        if existing is not None:
            return existing.slot

        record = _MemberRecord(id=member_id)
        self._apply_metadata(record, metadata)
        self._records[member_id] = record

        if self._length >= self.max_slots:
            record.overflow = {
                "position": tuple(float(v) for v in position),
                "color": tuple(float(v) for v in color),
                "size": float(size),
                "activity_score": float(activity_score),
            }
            self._index_username(record)
            return None

        if self._length + 1 > self._capacity:
            self._grow(self._length + 1)

        slot = self._length
        self._positions[slot] = position
        self._colors[slot] = color
        self._sizes[slot] = size
        self._activities[slot] = activity_score
        self._indices[slot] = slot
        self._length += 1

        record.slot = slot
        self._slot_ids.append(member_id)
        self._index_username(record)
        STORE_SLOTS.set(self._length)
        return slot

    def update(self, member_id: str, fields: dict, allow_relayout: bool = False) -> None:
        """
        Update a member in place.

        `position` is owned by the layout: it is rejected unless the caller is
        applying a full relayout over the complete dataset.
        """
        record = self._records.get(member_id)
        if record is None:
            raise KeyError(member_id)
        if "position" in fields and not allow_relayout:
            raise ValueError(
                f"position of {member_id} can only change during a full relayout"
            )

        meta = {k: v for k, v in fields.items() if k not in _COLUMN_FIELDS}
        old_username = record.username
        self._apply_metadata(record, meta)
        if record.username != old_username:
            self._unindex_username(old_username, record.id)
            self._index_username(record)

        columns = {k: v for k, v in fields.items() if k in _COLUMN_FIELDS}
        if not columns:
            return
        if record.slot is None:
            for key, value in columns.items():
                record.overflow[key] = value
            return
        slot = record.slot
        if "position" in columns:
            self._positions[slot] = columns["position"]
        if "color" in columns:
            self._colors[slot] = columns["color"]
        if "size" in columns:
            self._sizes[slot] = columns["size"]
        if "activity_score" in columns:
            self._activities[slot] = columns["activity_score"]

    @staticmethod
    def _apply_metadata(record: _MemberRecord, metadata: dict) -> None:
        for key, value in metadata.items():
            if key not in _RECORD_FIELDS:
                raise TypeError(f"unknown member field {key!r}")
            setattr(record, key, value)

    def _index_username(self, record: _MemberRecord) -> None:
        # Overflow members are indexed too; a rendered member wins a clash
        if not is_indexable_username(record.username):
            return
        key = record.username.strip().lower()
        current = self._records.get(self._id_by_username.get(key, ""))
        if current is None or current.slot is None or record.slot is not None:
            self._id_by_username[key] = record.id

    def _unindex_username(self, username: str, member_id: str) -> None:
        key = (username or "").strip().lower()
        if self._id_by_username.get(key) == member_id:
            del self._id_by_username[key]

    # ─────────────────────── reads ────────────────────────────────────────

    def get(self, member_id: str) -> Optional[Member]:
        record = self._records.get(member_id)
        if record is None:
            return None
        if record.slot is not None:
            slot = record.slot
            position = tuple(float(v) for v in self._positions[slot])
            activity_score = float(self._activities[slot])
            size = float(self._sizes[slot])
        else:
            position = record.overflow.get("position")
            activity_score = record.overflow.get("activity_score", 0.0)
            size = record.overflow.get("size", 2.0)
        return Member(
            id=record.id,
            username=record.username,
            profile_image_ref=record.profile_image_ref,
            position=position,
            risk_score=record.risk_score,
            risk_level=record.risk_level,
            activity=record.activity,
            activity_score=activity_score,
            size=size,
            sobriety_days=record.sobriety_days,
            sobriety_date=record.sobriety_date,
            total_comments=record.total_comments,
            cluster_label=record.cluster_label,
            region=record.region,
            city=record.city,
            country=record.country,
            slot=record.slot,
        )

    def slot_of(self, member_id: str) -> Optional[int]:
        record = self._records.get(member_id)
        return record.slot if record is not None else None

    def id_at(self, slot: int) -> Optional[str]:
        if 0 <= slot < self._length:
            return self._slot_ids[slot]
        return None

    def position_at(self, slot: int) -> Optional[np.ndarray]:
        if 0 <= slot < self._length:
            return self._positions[slot].copy()
        return None

    def resolve_by_username(self, username_lower: str) -> Optional[str]:
        """Any tracked member, including those beyond the render cap."""
        return self._id_by_username.get(username_lower)

    def resolve_slug(self, slug: str) -> Optional[str]:
        """Deep-link lookup: exact id first, then case-insensitive username."""
        key = (slug or "").strip()
        if not key:
            return None
        if key in self._records:
            return key
        return self.resolve_by_username(key.lower())

    def __len__(self) -> int:
        return self._length

    def __contains__(self, member_id: object) -> bool:
        return member_id in self._records

    @property
    def known_count(self) -> int:
        """All tracked members, including those beyond the render cap."""
        return len(self._records)

    def ids(self) -> Iterator[str]:
        """Ids in slot order (rendered members only)."""
        return iter(list(self._slot_ids))

    def locations(self) -> Iterator[tuple[int, Optional[str], Optional[str], Optional[str]]]:
        """(slot, country, region, city) for every rendered member."""
        for slot, member_id in enumerate(list(self._slot_ids)):
            record = self._records[member_id]
            yield slot, record.country, record.region, record.city

    def clear(self) -> None:
        self._length = 0
        self._allocate(self._initial_capacity)
        self._records.clear()
        self._slot_ids.clear()
        self._id_by_username.clear()
        STORE_SLOTS.set(0)
