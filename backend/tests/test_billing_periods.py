"""Tests for billing period arithmetic."""

from datetime import datetime, timedelta, timezone

import pytest

from backend.core.errors import ValidationError
from backend.features.billing.periods import add_interval, compute_period_end


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_add_month_clamps_day():
    assert add_interval(utc(2025, 1, 31), "month") == utc(2025, 2, 28)
    assert add_interval(utc(2024, 1, 31), "month") == utc(2024, 2, 29)
    assert add_interval(utc(2025, 12, 15), "month") == utc(2026, 1, 15)


def test_add_year_from_leap_day():
    assert add_interval(utc(2024, 2, 29), "year") == utc(2025, 2, 28)
    assert add_interval(utc(2024, 2, 29), "year", 4) == utc(2028, 2, 29)


def test_add_interval_rejects_unknown_interval():
    with pytest.raises(ValidationError):
        add_interval(utc(2025, 1, 1), "week")


def test_period_end_next_boundary_after_now():
    anchor = utc(2025, 1, 10, 9, 0)
    now = utc(2025, 3, 15, 12, 0)
    assert compute_period_end(anchor, "month", now=now) == utc(2025, 4, 10, 9, 0)


def test_period_end_on_exact_boundary_moves_forward():
    anchor = utc(2025, 1, 10)
    now = utc(2025, 3, 10)
    assert compute_period_end(anchor, "month", now=now) == utc(2025, 4, 10)


def test_period_end_keeps_anchor_day_across_short_months():
    anchor = utc(2025, 1, 31)
    assert compute_period_end(anchor, "month", now=utc(2025, 2, 28, 1)) == utc(2025, 3, 31)


def test_period_end_with_interval_count():
    anchor = utc(2025, 1, 1)
    assert compute_period_end(anchor, "month", 3, now=utc(2025, 2, 1)) == utc(2025, 4, 1)


def test_period_end_yearly():
    anchor = utc(2020, 6, 1)
    assert compute_period_end(anchor, "year", now=utc(2025, 3, 15)) == utc(2025, 6, 1)


@pytest.mark.parametrize("years_back", [0, 1, 7, 40])
@pytest.mark.parametrize("interval,count", [("month", 1), ("month", 6), ("year", 1), ("year", 2)])
def test_period_end_always_strictly_after_now(years_back, interval, count):
    now = utc(2025, 3, 15, 12, 0)
    anchor = now - timedelta(days=365 * years_back + 13)
    end = compute_period_end(anchor, interval, count, now=now)
    assert end > now
    assert end <= add_interval(now, interval, count)


def test_future_anchor_is_the_end():
    now = utc(2025, 3, 15)
    assert compute_period_end(utc(2025, 3, 20), "month", now=now) == utc(2025, 3, 20)


def test_cancel_at_overrides_interval_math():
    cancel_at = utc(2025, 3, 20)
    end = compute_period_end(utc(2024, 1, 1), "month", now=utc(2025, 3, 15), cancel_at=cancel_at)
    assert end == cancel_at


def test_invalid_interval_count():
    with pytest.raises(ValidationError):
        compute_period_end(utc(2025, 1, 1), "month", 0, now=utc(2025, 2, 1))
