"""Billing-date arithmetic and cost rollups."""
from datetime import date
from decimal import Decimal

import pytest

from mywallet.features.subscriptions.schedule import add_months, advance, annual_cost, monthly_cost
from mywallet.models.subscription import Frequency

SAMPLE_DATES = [
    date(2024, 1, 15),
    date(2024, 1, 31),
    date(2024, 2, 29),
    date(2023, 12, 31),
    date(2024, 8, 31),
]


@pytest.mark.parametrize("frequency", list(Frequency))
@pytest.mark.parametrize("start", SAMPLE_DATES)
def test_advance_is_strictly_after(start, frequency):
    assert advance(start, frequency) > start


@pytest.mark.parametrize("frequency", list(Frequency))
@pytest.mark.parametrize("start", SAMPLE_DATES)
def test_repeated_steps_equal_n_cycles(start, frequency):
    stepped = start
    for _ in range(5):
        stepped = advance(stepped, frequency)
    assert stepped == advance(start, frequency, cycles=5)


def test_calendar_month_rollover():
    assert advance(date(2024, 1, 15), Frequency.MONTHLY) == date(2024, 2, 15)
    assert advance(date(2024, 12, 10), Frequency.MONTHLY) == date(2025, 1, 10)
    assert advance(date(2024, 1, 31), Frequency.MONTHLY) == date(2024, 2, 29)
    assert advance(date(2023, 1, 31), Frequency.MONTHLY) == date(2023, 2, 28)


def test_each_frequency_step():
    start = date(2024, 1, 15)
    assert advance(start, Frequency.WEEKLY) == date(2024, 1, 22)
    assert advance(start, Frequency.QUARTERLY) == date(2024, 4, 15)
    assert advance(start, Frequency.SEMI_ANNUAL) == date(2024, 7, 15)
    assert advance(start, Frequency.YEARLY) == date(2025, 1, 15)


def test_leap_day_yearly_clamps():
    assert advance(date(2024, 2, 29), Frequency.YEARLY) == date(2025, 2, 28)


def test_unknown_frequency_defaults_to_monthly():
    assert advance(date(2024, 3, 10), "FORTNIGHTLY") == date(2024, 4, 10)
    assert advance(date(2024, 3, 10), "monthly") == date(2024, 4, 10)


def test_zero_cycles_rejected():
    with pytest.raises(ValueError):
        advance(date(2024, 1, 1), Frequency.MONTHLY, cycles=0)


def test_add_months_negative_crosses_year():
    assert add_months(date(2024, 1, 31), -2) == date(2023, 11, 30)


def test_cost_rollups():
    assert annual_cost(Decimal("29.90"), Frequency.MONTHLY) == Decimal("358.80")
    assert monthly_cost(Decimal("29.90"), Frequency.MONTHLY) == Decimal("29.90")
    assert monthly_cost(Decimal("120.00"), Frequency.YEARLY) == Decimal("10.00")
    assert monthly_cost(Decimal("10.00"), Frequency.WEEKLY) == Decimal("43.33")
    assert annual_cost(Decimal("50.00"), Frequency.QUARTERLY) == Decimal("200.00")
    assert annual_cost(Decimal("60.00"), Frequency.SEMI_ANNUAL) == Decimal("120.00")
