from datetime import datetime, timezone

import pytest

from billing_engine.core.clock import add_cycle, add_months, days_until, fixed_clock, from_datetime, to_datetime


def _ms(*args) -> int:
    return from_datetime(datetime(*args, tzinfo=timezone.utc))


def test_add_months_clamps_to_month_end():
    assert add_months(_ms(2025, 1, 31, 9, 30), 1) == _ms(2025, 2, 28, 9, 30)
    assert add_months(_ms(2024, 1, 31), 1) == _ms(2024, 2, 29)
    assert add_months(_ms(2025, 3, 31), 1) == _ms(2025, 4, 30)


def test_add_months_crosses_year_boundary():
    assert add_months(_ms(2025, 12, 15), 1) == _ms(2026, 1, 15)
    assert add_months(_ms(2025, 11, 30), 3) == _ms(2026, 2, 28)


def test_add_cycle():
    assert add_cycle(_ms(2025, 1, 15), "monthly") == _ms(2025, 2, 15)
    assert add_cycle(_ms(2024, 2, 29), "yearly") == _ms(2025, 2, 28)
    with pytest.raises(ValueError):
        add_cycle(_ms(2025, 1, 15), "weekly")


def test_days_until_rounds_up():
    now = _ms(2025, 1, 1)
    assert days_until(now, now) == 0
    assert days_until(now - 1, now) == 0
    assert days_until(now + 1, now) == 1
    assert days_until(_ms(2025, 1, 31), now) == 30


def test_naive_datetime_treated_as_utc():
    assert from_datetime(datetime(2025, 1, 1)) == _ms(2025, 1, 1)
    assert to_datetime(_ms(2025, 1, 1)).tzinfo is timezone.utc


def test_fixed_clock():
    clock = fixed_clock(123)
    assert clock() == 123
