"""
Billing-date arithmetic for recurring expenses.

Months and years are calendar steps, not fixed day counts: Jan 31 plus one
month is Feb 28 (or 29). Advancing N cycles is N single steps, so it always
matches what N successive billing runs produce.
"""
import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Union

from mywallet.models.subscription import Frequency

DateLike = Union[date, datetime]

# Frequency -> (days, months)
_STEPS = {
    Frequency.WEEKLY: (7, 0),
    Frequency.MONTHLY: (0, 1),
    Frequency.QUARTERLY: (0, 3),
    Frequency.SEMI_ANNUAL: (0, 6),
    Frequency.YEARLY: (0, 12),
}

ANNUAL_MULTIPLIERS = {
    Frequency.WEEKLY: 52,
    Frequency.MONTHLY: 12,
    Frequency.QUARTERLY: 4,
    Frequency.SEMI_ANNUAL: 2,
    Frequency.YEARLY: 1,
}

CENTS = Decimal("0.01")


def add_months(value: DateLike, months: int) -> DateLike:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def coerce_frequency(frequency) -> Frequency:
    """Map a stored frequency to the enum; unknown values count as MONTHLY."""
    if isinstance(frequency, Frequency):
        return frequency
    try:
        return Frequency(str(frequency).upper())
    except ValueError:
        return Frequency.MONTHLY


def advance(value: DateLike, frequency, cycles: int = 1) -> DateLike:
    """Move value forward by `cycles` billing periods of `frequency`."""
    if cycles < 1:
        raise ValueError("cycles must be >= 1")
    days, months = _STEPS[coerce_frequency(frequency)]
    for _ in range(cycles):
        value = value + timedelta(days=days) if days else add_months(value, months)
    return value


def annual_cost(amount: Decimal, frequency) -> Decimal:
    return (Decimal(amount) * ANNUAL_MULTIPLIERS[coerce_frequency(frequency)]).quantize(CENTS)


def monthly_cost(amount: Decimal, frequency) -> Decimal:
    annual = Decimal(amount) * ANNUAL_MULTIPLIERS[coerce_frequency(frequency)]
    return (annual / 12).quantize(CENTS)
