"""Tests for level-of-detail policy."""
from starfield import lod
from starfield.config import settings


def test_beam_cap_never_increases_with_more_targets():
    sizes = [0, 1, 80, 81, 250, 251, 800, 801, 4000, 4001, 100_000]
    caps = [lod.beam_segment_cap(n) for n in sizes]
    assert caps == sorted(caps, reverse=True)
    assert caps[0] == 56
    assert caps[-1] == lod.BEAM_SEGMENT_FLOOR


def test_partition_decorations():
    items = list(range(100))
    drawn, merged = lod.partition_decorations(items, full_detail=80)
    assert drawn == list(range(80))
    assert merged == list(range(80, 100))
    drawn, merged = lod.partition_decorations(items[:5])
    assert len(drawn) == 5 and merged == []


def test_update_intervals():
    assert lod.heavy_update_interval(panel_open=True) > lod.heavy_update_interval(panel_open=False)
    assert lod.beam_update_interval(False, 10) == 1
    assert lod.beam_update_interval(False, 30) == 2
    assert lod.beam_update_interval(False, 50) == 4
    assert lod.beam_update_interval(True, 10) == 8


def test_should_update():
    assert lod.should_update(7, 1)
    assert lod.should_update(6, 3)
    assert not lod.should_update(7, 3)


def test_comment_page_size_grows_for_heavy_commenters():
    assert lod.comment_page_size(0) == settings.comment_page_size
    assert lod.comment_page_size(settings.comment_page_size_threshold) == settings.comment_page_size_large
