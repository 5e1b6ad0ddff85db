from __future__ import annotations

import calendar
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from subtrack.core.config import get_settings
from subtrack.lifecycle.schemas import BillingCycle


# Sentinel billing date for lifetime purchases and out-of-range arithmetic.
NEVER = date.max

_DAYS_PER_CYCLE: dict[str, int] = {"DAILY": 1, "WEEKLY": 7, "BIWEEKLY": 14}
_MONTHS_PER_CYCLE: dict[str, int] = {"MONTHLY": 1, "QUARTERLY": 3, "SEMI_ANNUALLY": 6, "YEARLY": 12}


def quantize_amount(value: Decimal, precision: Decimal | None = None) -> Decimal:
    step = precision if precision is not None else get_settings().currency_precision
    return Decimal(value).quantize(step, rounding=ROUND_HALF_UP)


def add_months(base_date: date, months: int) -> date:
    month_index = base_date.month - 1 + months
    year = base_date.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_billing_date(from_date: date, cycle: BillingCycle, periods: int = 1) -> date:
    if cycle == "LIFETIME" or from_date == NEVER:
        return NEVER
    try:
        if cycle in _DAYS_PER_CYCLE:
            return from_date + timedelta(days=_DAYS_PER_CYCLE[cycle] * periods)
        return add_months(from_date, _MONTHS_PER_CYCLE[cycle] * periods)
    except (OverflowError, ValueError):
        return NEVER


def occurrences_per_year(cycle: BillingCycle, *, days_per_year: Decimal | None = None) -> Decimal:
    if cycle == "LIFETIME":
        return Decimal("0")
    if cycle in _MONTHS_PER_CYCLE:
        return Decimal(12 // _MONTHS_PER_CYCLE[cycle])
    year_length = days_per_year if days_per_year is not None else get_settings().billing_days_per_year
    return Decimal(year_length) / _DAYS_PER_CYCLE[cycle]


def monthly_equivalent(price: Decimal, cycle: BillingCycle, *, days_per_year: Decimal | None = None) -> Decimal:
    """Normalized per-month cost; lifetime purchases contribute nothing."""
    return quantize_amount(Decimal(price) * occurrences_per_year(cycle, days_per_year=days_per_year) / 12)


def annual_cost(price: Decimal, cycle: BillingCycle, *, days_per_year: Decimal | None = None) -> Decimal:
    return quantize_amount(Decimal(price) * occurrences_per_year(cycle, days_per_year=days_per_year))


def cycle_cost(annual_amount: Decimal, cycle: BillingCycle, *, days_per_year: Decimal | None = None) -> Decimal:
    occurrences = occurrences_per_year(cycle, days_per_year=days_per_year)
    if occurrences == 0:
        return quantize_amount(annual_amount)
    return quantize_amount(Decimal(annual_amount) / occurrences)


def billing_periods_between(start: date, end: date, cycle: BillingCycle) -> int:
    """Number of billing dates after ``start`` up to and including ``end``."""
    if cycle == "LIFETIME" or end <= start:
        return 0
    if cycle in _DAYS_PER_CYCLE:
        return (end - start).days // _DAYS_PER_CYCLE[cycle]
    step = _MONTHS_PER_CYCLE[cycle]
    months = (end.year - start.year) * 12 + (end.month - start.month)
    periods = months // step
    if periods > 0 and next_billing_date(start, cycle, periods) > end:
        periods -= 1
    return max(periods, 0)


def prorated(price: Decimal, cycle: BillingCycle, days_used: int, *, days_per_year: Decimal | None = None) -> Decimal:
    occurrences = occurrences_per_year(cycle, days_per_year=days_per_year)
    if occurrences == 0:
        return quantize_amount(price)
    year_length = days_per_year if days_per_year is not None else get_settings().billing_days_per_year
    days_in_cycle = Decimal(year_length) / occurrences
    used = min(Decimal(max(days_used, 0)), days_in_cycle)
    return quantize_amount(Decimal(price) * used / days_in_cycle)


def days_until(target: date, today: date) -> int | None:
    if target == NEVER:
        return None
    return (target - today).days
