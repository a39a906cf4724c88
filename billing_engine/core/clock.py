"""Time helpers.

Billing dates are stored as epoch milliseconds. Every component takes a
``Clock`` so tests can pin "now" without patching the datetime module.
"""
from __future__ import annotations

import calendar
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]

MS_PER_SECOND = 1000
MS_PER_HOUR = 60 * 60 * MS_PER_SECOND
MS_PER_DAY = 24 * MS_PER_HOUR


def system_clock() -> int:
    """Current UTC time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * MS_PER_SECOND)


def fixed_clock(now_ms: int) -> Clock:
    return lambda: now_ms


def to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / MS_PER_SECOND, timezone.utc)


def from_datetime(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * MS_PER_SECOND)


def add_months(ms: int, months: int) -> int:
    """Add calendar months, clamping the day to the end of the target month.

    Jan 31 + 1 month is Feb 28 (or 29), never Mar 3.
    """
    dt = to_datetime(ms)
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return from_datetime(dt.replace(year=year, month=month, day=day))


def add_cycle(ms: int, billing_cycle: str) -> int:
    """Advance a billing date by exactly one monthly or yearly cycle."""
    if billing_cycle == "yearly":
        return add_months(ms, 12)
    if billing_cycle == "monthly":
        return add_months(ms, 1)
    raise ValueError(f"Unknown billing cycle: {billing_cycle}")


def days_until(target_ms: int, now_ms: int) -> int:
    """Whole days from now until target, rounded up and clamped at zero."""
    delta = target_ms - now_ms
    if delta <= 0:
        return 0
    return -(-delta // MS_PER_DAY)
