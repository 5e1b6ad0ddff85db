from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from subtrack.lifecycle.schemas import NotTrialing, SubscriptionSnapshot, TrialConverted, Trialing, TrialLapsed
from subtrack.lifecycle.service import lifecycle_state
from subtrack.lifecycle.trial import apply_trial_outcome, describe_trial_status, evaluate_trial, trials_ending_soon


TODAY = date(2025, 3, 10)
NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _trial_subscription(end_date: date, *, converts: bool = True, name: str = "Streamly") -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        name=name,
        price=Decimal("0"),
        billing_cycle="MONTHLY",
        next_billing_date=end_date,
        trial=Trialing(
            start_date=date(2025, 2, 20),
            end_date=end_date,
            will_convert_to_paid=converts,
            price_after_trial=Decimal("12.99") if converts else None,
        ),
    )


def test_trial_window_is_validated() -> None:
    with pytest.raises(ValidationError):
        Trialing(start_date=date(2025, 3, 1), end_date=date(2025, 2, 1), will_convert_to_paid=False)

    with pytest.raises(ValidationError):
        Trialing(start_date=date(2025, 3, 1), end_date=date(2025, 3, 15), will_convert_to_paid=True)


@pytest.mark.parametrize(
    ("offset", "status", "text"),
    [
        (-1, "EXPIRED", "Trial expired"),
        (0, "ENDS_TODAY", "Trial ends today"),
        (1, "ENDS_TOMORROW", "Trial ends tomorrow"),
        (5, "ENDING_SOON", "Trial ends in 5 days"),
        (10, "ACTIVE", "Free trial, 10 days left"),
    ],
)
def test_trial_status_follows_days_remaining(offset: int, status: str, text: str) -> None:
    subscription = _trial_subscription(TODAY + timedelta(days=offset))

    evaluation = evaluate_trial(subscription, TODAY)

    assert evaluation.status == status
    assert evaluation.days_remaining == offset
    assert evaluation.is_expired is (offset < 0)
    assert describe_trial_status(evaluation) == text


def test_non_trial_subscription_has_no_trial_status() -> None:
    subscription = SubscriptionSnapshot(
        name="Cloud Drive",
        price=Decimal("2.99"),
        billing_cycle="MONTHLY",
        next_billing_date=date(2025, 4, 1),
    )

    evaluation = evaluate_trial(subscription, TODAY)

    assert isinstance(subscription.trial, NotTrialing)
    assert evaluation.status == "NOT_TRIALING"
    assert evaluation.days_remaining is None
    assert describe_trial_status(evaluation) == "Not on a trial"
    assert apply_trial_outcome(subscription, now=NOW, today=TODAY) is None


def test_expired_trial_converts_once_without_charge() -> None:
    subscription = _trial_subscription(date(2025, 3, 5))

    outcome = apply_trial_outcome(subscription, now=NOW, today=TODAY)

    assert outcome == "CONVERTED"
    assert isinstance(subscription.trial, TrialConverted)
    assert subscription.trial.converted_at == NOW
    assert subscription.price == Decimal("12.99")
    assert subscription.next_billing_date == date(2025, 4, 10)
    assert subscription.total_spent == Decimal("0")
    assert subscription.is_free_trial is False
    assert subscription.trial_end_date == date(2025, 3, 5)
    assert lifecycle_state(subscription) == "ACTIVE"

    assert apply_trial_outcome(subscription, now=NOW, today=TODAY) is None
    assert subscription.price == Decimal("12.99")


def test_trial_that_does_not_convert_lapses() -> None:
    subscription = _trial_subscription(date(2025, 3, 9), converts=False)

    outcome = apply_trial_outcome(subscription, now=NOW, today=TODAY)

    assert outcome == "LAPSED"
    assert isinstance(subscription.trial, TrialLapsed)
    assert subscription.is_active is False
    assert subscription.cancellation_date == NOW
    assert lifecycle_state(subscription) == "LAPSED"


def test_trial_ending_today_is_not_resolved_yet() -> None:
    subscription = _trial_subscription(TODAY)

    assert apply_trial_outcome(subscription, now=NOW, today=TODAY) is None
    assert lifecycle_state(subscription) == "TRIALING"


def test_trials_ending_soon_sorted_by_end_date() -> None:
    later = _trial_subscription(TODAY + timedelta(days=6), name="Later")
    sooner = _trial_subscription(TODAY + timedelta(days=2), name="Sooner")
    far = _trial_subscription(TODAY + timedelta(days=20), name="Far")
    expired = _trial_subscription(TODAY - timedelta(days=1), name="Expired")

    ending = trials_ending_soon([later, far, expired, sooner], TODAY)

    assert [item.name for item in ending] == ["Sooner", "Later"]
    assert [item.name for item in trials_ending_soon([later, far], TODAY, within_days=30)] == ["Later", "Far"]
