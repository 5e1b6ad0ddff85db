from __future__ import annotations

from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest

from subtrack.core.config import get_settings
from subtrack.lifecycle.calendar import (
    NEVER,
    add_months,
    annual_cost,
    billing_periods_between,
    cycle_cost,
    days_until,
    monthly_equivalent,
    next_billing_date,
    occurrences_per_year,
    prorated,
    quantize_amount,
)


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_monthly_stepping_clamps_to_month_end_and_drifts() -> None:
    first = next_billing_date(date(2025, 1, 31), "MONTHLY")
    second = next_billing_date(first, "MONTHLY")

    assert first == date(2025, 2, 28)
    assert second == date(2025, 3, 28)
    assert next_billing_date(date(2024, 1, 31), "MONTHLY") == date(2024, 2, 29)


def test_day_based_and_multi_month_cycles() -> None:
    start = date(2025, 1, 5)

    assert next_billing_date(start, "DAILY") == date(2025, 1, 6)
    assert next_billing_date(start, "WEEKLY") == date(2025, 1, 12)
    assert next_billing_date(start, "BIWEEKLY") == date(2025, 1, 19)
    assert next_billing_date(start, "QUARTERLY") == date(2025, 4, 5)
    assert next_billing_date(start, "SEMI_ANNUALLY") == date(2025, 7, 5)
    assert next_billing_date(start, "YEARLY") == date(2026, 1, 5)
    assert next_billing_date(start, "MONTHLY", periods=3) == date(2025, 4, 5)
    assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)


def test_lifetime_and_out_of_range_dates_never_bill() -> None:
    assert next_billing_date(date(2025, 1, 5), "LIFETIME") == NEVER
    assert next_billing_date(NEVER, "MONTHLY") == NEVER
    assert next_billing_date(date(9999, 12, 30), "WEEKLY") == NEVER
    assert next_billing_date(date(9999, 12, 15), "MONTHLY") == NEVER


def test_normalized_costs_per_cycle() -> None:
    assert monthly_equivalent(Decimal("9.99"), "MONTHLY") == Decimal("9.99")
    assert annual_cost(Decimal("9.99"), "MONTHLY") == Decimal("119.88")
    assert monthly_equivalent(Decimal("120"), "YEARLY") == Decimal("10.00")
    assert monthly_equivalent(Decimal("30"), "QUARTERLY") == Decimal("10.00")
    assert annual_cost(Decimal("10"), "WEEKLY", days_per_year=Decimal("364")) == Decimal("520.00")
    assert monthly_equivalent(Decimal("499"), "LIFETIME") == Decimal("0.00")
    assert annual_cost(Decimal("499"), "LIFETIME") == Decimal("0.00")


def test_weekly_occurrences_follow_configured_year_length(monkeypatch: pytest.MonkeyPatch) -> None:
    assert occurrences_per_year("WEEKLY") == Decimal("365.2425") / 7

    monkeypatch.setenv("BILLING_DAYS_PER_YEAR", "365")
    get_settings.cache_clear()

    assert occurrences_per_year("DAILY") == Decimal("365")
    assert occurrences_per_year("YEARLY") == Decimal("1")
    assert occurrences_per_year("LIFETIME") == Decimal("0")


def test_cycle_cost_spreads_annual_amount() -> None:
    assert cycle_cost(Decimal("120"), "MONTHLY") == Decimal("10.00")
    assert cycle_cost(Decimal("120"), "QUARTERLY") == Decimal("30.00")
    assert cycle_cost(Decimal("120"), "LIFETIME") == Decimal("120.00")


def test_billing_periods_between_counts_dates_in_window() -> None:
    assert billing_periods_between(date(2025, 1, 5), date(2025, 3, 10), "MONTHLY") == 2
    assert billing_periods_between(date(2025, 1, 5), date(2025, 3, 4), "MONTHLY") == 1
    assert billing_periods_between(date(2025, 1, 1), date(2025, 1, 15), "WEEKLY") == 2
    assert billing_periods_between(date(2025, 3, 10), date(2025, 1, 5), "MONTHLY") == 0
    assert billing_periods_between(date(2025, 1, 5), date(2030, 1, 5), "LIFETIME") == 0


def test_prorated_caps_at_full_cycle() -> None:
    assert prorated(Decimal("30"), "MONTHLY", 15, days_per_year=Decimal("360")) == Decimal("15.00")
    assert prorated(Decimal("30"), "MONTHLY", 90, days_per_year=Decimal("360")) == Decimal("30.00")
    assert prorated(Decimal("30"), "MONTHLY", -4, days_per_year=Decimal("360")) == Decimal("0.00")
    assert prorated(Decimal("199"), "LIFETIME", 3) == Decimal("199.00")


def test_rounding_and_countdown_helpers() -> None:
    assert quantize_amount(Decimal("1.005")) == Decimal("1.01")
    assert quantize_amount(Decimal("1.2345"), Decimal("0.001")) == Decimal("1.235")
    assert days_until(date(2025, 3, 15), date(2025, 3, 10)) == 5
    assert days_until(date(2025, 3, 5), date(2025, 3, 10)) == -5
    assert days_until(NEVER, date(2025, 3, 10)) is None


@pytest.mark.parametrize("price", ["9.99", "59.99", "120", "0.01"])
def test_yearly_price_survives_monthly_round_trip_within_rounding(price: str) -> None:
    amount = Decimal(price)

    # Each monthly figure is rounded to cents, so twelve of them drift by at most 12 half-cents.
    assert abs(monthly_equivalent(amount, "YEARLY") * 12 - amount) <= Decimal("0.06")


def test_yearly_nine_ninety_nine_rounds_down_per_month() -> None:
    assert monthly_equivalent(Decimal("9.99"), "YEARLY") == Decimal("0.83")
    assert monthly_equivalent(Decimal("9.99"), "YEARLY") * 12 == Decimal("9.96")


@pytest.mark.parametrize("anchor", [date(2024, 2, 29), date(2025, 8, 31), date(2025, 1, 31), date(2025, 12, 31)])
@pytest.mark.parametrize(
    "cycle",
    ["DAILY", "WEEKLY", "BIWEEKLY", "MONTHLY", "QUARTERLY", "SEMI_ANNUALLY", "YEARLY"],
)
def test_next_billing_date_always_moves_forward(anchor: date, cycle: str) -> None:
    assert next_billing_date(anchor, cycle) > anchor


def test_month_end_anchors_clamp_on_long_cycles() -> None:
    assert next_billing_date(date(2024, 2, 29), "YEARLY") == date(2025, 2, 28)
    assert next_billing_date(date(2025, 8, 31), "QUARTERLY") == date(2025, 11, 30)
    assert next_billing_date(date(2025, 8, 31), "SEMI_ANNUALLY") == date(2026, 2, 28)
