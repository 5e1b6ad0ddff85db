from __future__ import annotations

from collections.abc import Iterable
from datetime import date, datetime

from subtrack.lifecycle.calendar import next_billing_date
from subtrack.lifecycle.schemas import (
    SubscriptionSnapshot,
    TrialConverted,
    TrialEvaluation,
    Trialing,
    TrialLapsed,
    TrialOutcome,
    TrialStatus,
)


TRIAL_ENDING_SOON_DAYS = 7


def _status_for(days_remaining: int) -> TrialStatus:
    if days_remaining < 0:
        return "EXPIRED"
    if days_remaining == 0:
        return "ENDS_TODAY"
    if days_remaining == 1:
        return "ENDS_TOMORROW"
    if days_remaining < TRIAL_ENDING_SOON_DAYS:
        return "ENDING_SOON"
    return "ACTIVE"


def evaluate_trial(subscription: SubscriptionSnapshot, today: date) -> TrialEvaluation:
    trial = subscription.trial
    if not isinstance(trial, Trialing):
        return TrialEvaluation(days_remaining=None, is_expired=False, status="NOT_TRIALING")
    days_remaining = (trial.end_date - today).days
    return TrialEvaluation(
        days_remaining=days_remaining,
        is_expired=today > trial.end_date,
        status=_status_for(days_remaining),
    )


def describe_trial_status(evaluation: TrialEvaluation) -> str:
    if evaluation.status == "NOT_TRIALING":
        return "Not on a trial"
    if evaluation.status == "EXPIRED":
        return "Trial expired"
    if evaluation.status == "ENDS_TODAY":
        return "Trial ends today"
    if evaluation.status == "ENDS_TOMORROW":
        return "Trial ends tomorrow"
    if evaluation.status == "ENDING_SOON":
        return f"Trial ends in {evaluation.days_remaining} days"
    return f"Free trial, {evaluation.days_remaining} days left"


def apply_trial_outcome(subscription: SubscriptionSnapshot, *, now: datetime, today: date) -> TrialOutcome | None:
    """Move an expired trial to its terminal phase in place.

    Returns ``None`` when the subscription is not trialing or the trial has not
    expired yet, so repeated calls after the first transition change nothing.
    """
    trial = subscription.trial
    if not isinstance(trial, Trialing) or not today > trial.end_date:
        return None

    if trial.will_convert_to_paid and trial.price_after_trial is not None:
        subscription.trial = TrialConverted(
            start_date=trial.start_date,
            end_date=trial.end_date,
            price_after_trial=trial.price_after_trial,
            converted_at=now,
        )
        subscription.price = trial.price_after_trial
        subscription.next_billing_date = next_billing_date(today, subscription.billing_cycle)
        return "CONVERTED"

    subscription.trial = TrialLapsed(start_date=trial.start_date, end_date=trial.end_date, lapsed_at=now)
    subscription.is_active = False
    subscription.cancellation_date = now
    return "LAPSED"


def trials_ending_soon(
    subscriptions: Iterable[SubscriptionSnapshot],
    today: date,
    within_days: int = TRIAL_ENDING_SOON_DAYS,
) -> list[SubscriptionSnapshot]:
    ending: list[SubscriptionSnapshot] = []
    for subscription in subscriptions:
        evaluation = evaluate_trial(subscription, today)
        if evaluation.days_remaining is None or evaluation.is_expired:
            continue
        if evaluation.days_remaining <= within_days:
            ending.append(subscription)
    return sorted(ending, key=lambda item: item.trial_end_date or date.max)
