"""
Billing period arithmetic.

Calendar intervals: one month from Jan 31 is Feb 28/29 (day clamped to the
end of the target month), one year from Feb 29 is Feb 28. Every k-th
boundary is computed from the anchor directly, so clamping never drifts.
"""
import calendar
from datetime import datetime, timezone
from typing import Optional

from backend.core.errors import ValidationError

VALID_INTERVALS = ("month", "year")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_interval(value: datetime, interval: str, count: int = 1) -> datetime:
    """Advance `value` by `count` calendar months or years."""
    if interval not in VALID_INTERVALS:
        raise ValidationError(f"Unsupported billing interval: {interval}")
    months = count * 12 if interval == "year" else count
    return _add_months(value, months)


def compute_period_end(
    anchor: datetime,
    interval: str,
    interval_count: int = 1,
    *,
    now: Optional[datetime] = None,
    cancel_at: Optional[datetime] = None,
) -> datetime:
    """
    End of the billing period containing `now`.

    A hard cancellation timestamp is authoritative. Otherwise the anchor is
    advanced by whole intervals until the boundary is strictly after `now`.
    """
    if cancel_at is not None:
        return cancel_at
    if interval_count < 1:
        raise ValidationError(f"interval_count must be >= 1, got {interval_count}")

    if interval not in VALID_INTERVALS:
        raise ValidationError(f"Unsupported billing interval: {interval}")

    now = now or datetime.now(timezone.utc)
    step_months = interval_count * (12 if interval == "year" else 1)

    # Jump close to `now` first so anchors far in the past stay cheap
    elapsed_months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
    steps = max(0, elapsed_months // step_months - 1)
    candidate = _add_months(anchor, steps * step_months)
    while candidate <= now:
        steps += 1
        candidate = _add_months(anchor, steps * step_months)
    return candidate
