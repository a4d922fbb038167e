"""
Level-of-detail policy. Pure functions of dataset size and UI state.

The full engagement and post sets are always kept in data; these only decide
how much of them is drawn and how often per-frame updates run.
"""
from typing import Sequence, TypeVar

from starfield.config import settings

T = TypeVar("T")

# (max unique targets, segments drawn); steps never increase as N grows
BEAM_SEGMENT_STEPS: tuple[tuple[int, int], ...] = (
    (80, 56),
    (250, 44),
    (800, 36),
    (4000, 28),
)
BEAM_SEGMENT_FLOOR = 24


def beam_segment_cap(edge_count: int) -> int:
    """How many beams to draw for a member with `edge_count` unique targets."""
    for limit, cap in BEAM_SEGMENT_STEPS:
        if edge_count <= limit:
            return cap
    return BEAM_SEGMENT_FLOOR


def partition_decorations(
    items: Sequence[T],
    full_detail: int | None = None,
) -> tuple[list[T], list[T]]:
    """Split into (sprite-drawn prefix, merged low-detail remainder)."""
    n = settings.planet_sprite_lod if full_detail is None else full_detail
    return list(items[:n]), list(items[n:])


def heavy_update_interval(panel_open: bool) -> int:
    return 6 if panel_open else 3


def beam_update_interval(panel_open: bool, beam_count: int) -> int:
    if panel_open:
        return 8
    if beam_count > 44:
        return 4
    if beam_count > 28:
        return 2
    return 1


def should_update(frame: int, interval: int) -> bool:
    """Run on one tick out of every `interval`."""
    return interval <= 1 or frame % interval == 0


def comment_page_size(loaded: int) -> int:
    if loaded >= settings.comment_page_size_threshold:
        return settings.comment_page_size_large
    return settings.comment_page_size
