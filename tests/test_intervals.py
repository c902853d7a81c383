"""Tests for interval arithmetic."""

from datetime import datetime, timedelta, timezone

import pytest

from expert_booking.utils.intervals import (
    Interval,
    clip_intervals,
    merge_intervals,
    subtract_intervals,
)

BASE = datetime(2026, 3, 2, 14, 0, tzinfo=timezone.utc)


def span(start_min: int, end_min: int) -> Interval:
    return Interval(BASE + timedelta(minutes=start_min), BASE + timedelta(minutes=end_min))


def test_interval_requires_aware_bounds():
    with pytest.raises(ValueError):
        Interval(datetime(2026, 3, 2, 9), datetime(2026, 3, 2, 10))


def test_interval_rejects_inverted_bounds():
    with pytest.raises(ValueError):
        span(60, 0)


def test_half_open_intervals_touching_do_not_overlap():
    assert not span(0, 60).overlaps(span(60, 120))
    assert span(0, 61).overlaps(span(60, 120))


def test_merge_joins_overlapping_and_touching():
    merged = merge_intervals([span(60, 120), span(0, 30), span(30, 45), span(100, 150)])
    assert merged == [span(0, 45), span(60, 150)]


def test_merge_drops_empty_intervals():
    assert merge_intervals([span(10, 10)]) == []


def test_subtract_splits_around_cut():
    assert subtract_intervals([span(0, 180)], [span(60, 120)]) == [span(0, 60), span(120, 180)]


def test_subtract_removes_fully_covered_span():
    assert subtract_intervals([span(30, 60)], [span(0, 90)]) == []


def test_subtract_with_multiple_cuts():
    result = subtract_intervals([span(0, 180)], [span(0, 15), span(150, 200), span(60, 90)])
    assert result == [span(15, 60), span(90, 150)]


def test_clip_to_bounds():
    clipped = clip_intervals([span(-30, 30), span(50, 70), span(200, 260)], span(0, 60))
    assert clipped == [span(0, 30), span(50, 60)]
