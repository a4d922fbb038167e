"""Tests for display-derived values."""
from datetime import datetime, timezone

from starfield.presentation import (
    activity_color,
    initials,
    member_size,
    risk_color,
    risk_level,
    risk_score_for,
    sobriety_days_since,
)


def test_risk_score_is_deterministic():
    assert risk_score_for(10, 0) == risk_score_for(10, 0)
    assert risk_score_for(10, 0) == 90
    assert risk_score_for(1000, 80) == 15
    assert risk_score_for(200, 20) == 60


def test_risk_levels():
    assert risk_level(0) == "low"
    assert risk_level(33) == "medium"
    assert risk_level(65) == "medium"
    assert risk_level(66) == "high"


def test_risk_color_endpoints():
    assert risk_color(0.0) == (0.0, 0.0, 1.0)
    assert risk_color(1.0)[0] == 1.0
    assert activity_color(0.0) == (0.0, 0.0, 1.0)


def test_member_size_grows_with_comments():
    assert member_size(0) == 2
    assert member_size(100) > member_size(10)


def test_sobriety_days_since():
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    assert sobriety_days_since("2024-02-01T00:00:00.000Z", now=now) == 29
    assert sobriety_days_since(None, now=now) == 0
    assert sobriety_days_since("not a date", now=now) == 0
    assert sobriety_days_since("2030-01-01T00:00:00Z", now=now) == 0


def test_initials():
    assert initials("jane_doe") == "JD"
    assert initials("bob") == "B"
    assert initials("") == "?"
    assert initials(None) == "?"
