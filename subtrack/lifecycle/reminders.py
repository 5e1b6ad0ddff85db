from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Literal

from subtrack.core.config import get_settings
from subtrack.lifecycle.calendar import NEVER
from subtrack.lifecycle.schemas import (
    TRIAL_CONVERSION_REASON,
    PriceChange,
    ReminderDiff,
    ReminderPreferences,
    ReminderStatistics,
    ReminderType,
    ScheduledReminder,
    SubscriptionSnapshot,
    Trialing,
)


SnoozeOption = Literal["FIFTEEN_MINUTES", "ONE_HOUR", "THREE_HOURS", "TOMORROW", "NEXT_WEEK"]

SNOOZE_MORNING = time(9, 0)

# Types whose existence the engine decides; CUSTOM reminders belong to the caller.
MANAGED_REMINDER_TYPES: tuple[ReminderType, ...] = ("RENEWAL", "TRIAL_EXPIRATION", "PRICE_CHANGE", "UNUSED")

TRIAL_MILESTONE_DAYS: tuple[int, ...] = (3, 1, 0)


@dataclass(slots=True, frozen=True)
class DesiredReminder:
    type: ReminderType
    scheduled_at: datetime
    message: str
    dedup_key: str


def is_in_quiet_hours(instant: datetime, preferences: ReminderPreferences) -> bool:
    start = preferences.quiet_hours_start
    end = preferences.quiet_hours_end
    if not preferences.quiet_hours_enabled or start == end:
        return False
    moment = instant.time().replace(tzinfo=None)
    if start < end:
        return start <= moment < end
    return moment >= start or moment < end


def shift_out_of_quiet_hours(instant: datetime, preferences: ReminderPreferences) -> datetime:
    """Move an instant inside the quiet window to the window's end; outside instants are returned as-is."""
    if not is_in_quiet_hours(instant, preferences):
        return instant
    end = preferences.quiet_hours_end
    window_end = instant.replace(hour=end.hour, minute=end.minute, second=0, microsecond=0)
    if preferences.quiet_hours_start > end and instant.time().replace(tzinfo=None) >= preferences.quiet_hours_start:
        window_end = window_end + timedelta(days=1)
    return window_end


def snooze_until(option: SnoozeOption, now: datetime) -> datetime:
    if option == "FIFTEEN_MINUTES":
        return now + timedelta(minutes=15)
    if option == "ONE_HOUR":
        return now + timedelta(hours=1)
    if option == "THREE_HOURS":
        return now + timedelta(hours=3)
    days = 1 if option == "TOMORROW" else 7
    target = now + timedelta(days=days)
    return target.replace(hour=SNOOZE_MORNING.hour, minute=SNOOZE_MORNING.minute, second=0, microsecond=0)


def snooze(reminder: ScheduledReminder, until: datetime) -> ScheduledReminder:
    return reminder.model_copy(update={"status": "SNOOZED", "snoozed_until": until, "scheduled_at": until})


def dismiss(reminder: ScheduledReminder) -> ScheduledReminder:
    return reminder.model_copy(update={"status": "DISMISSED", "snoozed_until": None})


def apply_diff(existing: Iterable[ScheduledReminder], diff: ReminderDiff) -> list[ScheduledReminder]:
    cancelled = {item.id for item in diff.to_cancel}
    updated = {item.id: item for item in diff.to_update}
    result = [updated.get(item.id, item) for item in existing if item.id not in cancelled]
    known = {item.id for item in result}
    result.extend(item for item in diff.to_create if item.id not in known)
    return result


def should_send_reminder(
    subscription: SubscriptionSnapshot,
    reminders: Iterable[ScheduledReminder],
    now: datetime,
    preferences: ReminderPreferences,
) -> bool:
    """Delivery gate: one reminder a day per subscription and ``max_daily_reminders`` sent per day overall."""
    if not subscription.is_active or not subscription.enable_renewal_reminder:
        return False
    if subscription.last_reminder_sent is not None and now - subscription.last_reminder_sent < timedelta(days=1):
        return False
    today = now.date()
    sent_today = sum(
        1 for item in reminders if item.status == "SENT" and item.scheduled_at.astimezone(now.tzinfo).date() == today
    )
    return sent_today < preferences.max_daily_reminders


def reminder_statistics(reminders: Iterable[ScheduledReminder], now: datetime) -> ReminderStatistics:
    today = now.date()
    week_end = today + timedelta(days=7)
    counts = {"SCHEDULED": 0, "SENT": 0, "SNOOZED": 0, "DISMISSED": 0}
    upcoming_today = upcoming_week = overdue = 0
    for item in reminders:
        if item.status in counts:
            counts[item.status] += 1
        if not item.is_pending:
            continue
        if item.scheduled_at <= now:
            overdue += 1
            continue
        day = item.scheduled_at.astimezone(now.tzinfo).date()
        if day == today:
            upcoming_today += 1
        if day <= week_end:
            upcoming_week += 1
    return ReminderStatistics(
        total_scheduled=counts["SCHEDULED"],
        total_sent=counts["SENT"],
        total_snoozed=counts["SNOOZED"],
        total_dismissed=counts["DISMISSED"],
        upcoming_today=upcoming_today,
        upcoming_week=upcoming_week,
        overdue_count=overdue,
    )


def reminder_id(subscription: SubscriptionSnapshot, dedup_key: str) -> str:
    return f"{subscription.id}:{dedup_key}"


@dataclass(slots=True)
class ReminderPolicyEngine:
    price_change_alert_window_days: int = field(default_factory=lambda: get_settings().price_change_alert_window_days)

    def reconcile(
        self,
        subscription: SubscriptionSnapshot,
        existing: Iterable[ScheduledReminder],
        now: datetime,
        preferences: ReminderPreferences,
        *,
        latest_price_change: PriceChange | None = None,
    ) -> ReminderDiff:
        tz = now.tzinfo
        if tz is None:
            raise ValueError("reconcile requires a timezone-aware now")
        own = [item for item in existing if item.subscription_id == subscription.id]
        diff = ReminderDiff(subscription_id=subscription.id)

        for reminder_type in MANAGED_REMINDER_TYPES:
            of_type = [item for item in own if item.type == reminder_type]
            desired = None
            if reminder_type in preferences.enabled_types:
                desired = self._desired(reminder_type, subscription, of_type, now, tz, preferences, latest_price_change)
            self._reconcile_type(subscription, of_type, desired, now, tz, diff)

        if not subscription.is_active:
            diff.to_cancel.extend(item for item in own if item.type == "CUSTOM" and _is_open(item))
        return diff

    def _desired(
        self,
        reminder_type: ReminderType,
        subscription: SubscriptionSnapshot,
        of_type: list[ScheduledReminder],
        now: datetime,
        tz: tzinfo,
        preferences: ReminderPreferences,
        latest_price_change: PriceChange | None,
    ) -> DesiredReminder | None:
        if reminder_type == "RENEWAL":
            desired = self._renewal(subscription, now, tz, preferences)
        elif reminder_type == "TRIAL_EXPIRATION":
            desired = self._trial_expiration(subscription, of_type, now, tz, preferences)
        elif reminder_type == "PRICE_CHANGE":
            desired = self._price_change(subscription, latest_price_change, now, tz, preferences)
        else:
            desired = self._unused(subscription, now, tz, preferences)
        if desired is None:
            return None
        if any(item.is_delivered and item.dedup_key == desired.dedup_key for item in of_type):
            return None
        return desired

    def _renewal(
        self,
        subscription: SubscriptionSnapshot,
        now: datetime,
        tz: tzinfo,
        preferences: ReminderPreferences,
    ) -> DesiredReminder | None:
        next_billing = subscription.next_billing_date
        if (
            not subscription.enable_renewal_reminder
            or not subscription.is_active
            or subscription.is_free_trial
            or subscription.billing_cycle == "LIFETIME"
            or next_billing == NEVER
            or next_billing < now.astimezone(tz).date()
        ):
            return None

        created_at = subscription.created_at.astimezone(tz)
        reminder_day = _days_before(next_billing, subscription.reminder_days_before, floor=created_at.date())
        ideal = max(_at(reminder_day, subscription.reminder_time or preferences.default_time, tz), created_at)
        if subscription.last_reminder_sent is not None and subscription.last_reminder_sent >= ideal:
            return None

        return DesiredReminder(
            type="RENEWAL",
            scheduled_at=_finalize(ideal, now, tz, preferences),
            message=f"{subscription.name} renews on {next_billing.isoformat()} for {subscription.price} {subscription.currency}",
            dedup_key=f"renewal:{next_billing.isoformat()}",
        )

    def _trial_expiration(
        self,
        subscription: SubscriptionSnapshot,
        of_type: list[ScheduledReminder],
        now: datetime,
        tz: tzinfo,
        preferences: ReminderPreferences,
    ) -> DesiredReminder | None:
        trial = subscription.trial
        if not isinstance(trial, Trialing) or now.astimezone(tz).date() > trial.end_date:
            return None

        reminder_time = subscription.reminder_time or preferences.default_time
        created_at = subscription.created_at.astimezone(tz)
        milestones: list[tuple[int, datetime]] = []
        for days_before in TRIAL_MILESTONE_DAYS:
            milestone_day = _days_before(trial.end_date, days_before, floor=date.min)
            if milestone_day < trial.start_date:
                continue
            milestones.append((days_before, max(_at(milestone_day, reminder_time, tz), created_at)))
        if not milestones:
            return None

        delivered = {item.dedup_key for item in of_type if item.is_delivered}
        due = [item for item in milestones if item[1] <= now]
        upcoming = [item for item in milestones if item[1] > now]

        chosen: tuple[int, datetime] | None = None
        if due and _trial_key(trial, due[-1][0]) not in delivered:
            chosen = due[-1]
        else:
            chosen = next((item for item in upcoming if _trial_key(trial, item[0]) not in delivered), None)
        if chosen is None:
            return None

        days_before, ideal = chosen
        return DesiredReminder(
            type="TRIAL_EXPIRATION",
            scheduled_at=_finalize(ideal, now, tz, preferences),
            message=_trial_message(subscription, trial, days_before),
            dedup_key=_trial_key(trial, days_before),
        )

    def _price_change(
        self,
        subscription: SubscriptionSnapshot,
        change: PriceChange | None,
        now: datetime,
        tz: tzinfo,
        preferences: ReminderPreferences,
    ) -> DesiredReminder | None:
        if change is None or change.subscription_id != subscription.id or not subscription.is_active:
            return None
        if not change.is_increase or change.reason == TRIAL_CONVERSION_REASON:
            return None
        if change.change_date < now - timedelta(days=self.price_change_alert_window_days):
            return None

        return DesiredReminder(
            type="PRICE_CHANGE",
            scheduled_at=_finalize(change.change_date, now, tz, preferences),
            message=(
                f"{subscription.name} price increased from {change.old_price} to {change.new_price} "
                f"{subscription.currency} ({change.formatted_change_percentage})"
            ),
            dedup_key=f"price_change:{change.id}",
        )

    def _unused(
        self,
        subscription: SubscriptionSnapshot,
        now: datetime,
        tz: tzinfo,
        preferences: ReminderPreferences,
    ) -> DesiredReminder | None:
        last_used = subscription.last_used_date
        if not subscription.is_active or last_used is None:
            return None
        if (now.astimezone(tz).date() - last_used).days < preferences.unused_after_days:
            return None

        ideal = _at(last_used + timedelta(days=preferences.unused_after_days), preferences.default_time, tz)
        return DesiredReminder(
            type="UNUSED",
            scheduled_at=_finalize(ideal, now, tz, preferences),
            message=f"You have not used {subscription.name} since {last_used.isoformat()}",
            dedup_key=f"unused:{last_used.isoformat()}",
        )

    @staticmethod
    def _reconcile_type(
        subscription: SubscriptionSnapshot,
        of_type: list[ScheduledReminder],
        desired: DesiredReminder | None,
        now: datetime,
        tz: tzinfo,
        diff: ReminderDiff,
    ) -> None:
        open_items = [item for item in of_type if _is_open(item)]
        if desired is None:
            diff.to_cancel.extend(open_items)
            return

        snoozed = [item for item in open_items if item.is_snoozed_at(now)]
        if snoozed:
            diff.to_cancel.extend(item for item in open_items if item.id != snoozed[0].id)
            return

        # Pending reminders first, then reminders whose snooze has run out.
        candidates = sorted(open_items, key=lambda item: (not item.is_pending, item.scheduled_at))
        desired_day = desired.scheduled_at.date()
        match = next((item for item in candidates if item.dedup_key == desired.dedup_key), None)
        if match is None:
            match = next(
                (item for item in candidates if item.is_pending and item.scheduled_at.astimezone(tz).date() == desired_day),
                None,
            )

        keeper = match or (candidates[0] if candidates else None)
        if keeper is None:
            diff.to_create.append(
                ScheduledReminder(
                    id=reminder_id(subscription, desired.dedup_key),
                    subscription_id=subscription.id,
                    type=desired.type,
                    scheduled_at=desired.scheduled_at,
                    message=desired.message,
                    dedup_key=desired.dedup_key,
                    created_at=now,
                )
            )
        else:
            updates: dict[str, object] = {}
            if keeper.scheduled_at.astimezone(tz).date() != desired_day or not keeper.is_pending:
                updates["scheduled_at"] = desired.scheduled_at
            if keeper.message != desired.message:
                updates["message"] = desired.message
            if keeper.dedup_key != desired.dedup_key:
                updates["dedup_key"] = desired.dedup_key
            if not keeper.is_pending:
                updates["status"] = "SCHEDULED"
                updates["snoozed_until"] = None
            if updates:
                diff.to_update.append(keeper.model_copy(update=updates))

        diff.to_cancel.extend(item for item in candidates if keeper is None or item.id != keeper.id)


def _is_open(reminder: ScheduledReminder) -> bool:
    return reminder.is_pending or reminder.status == "SNOOZED"


def _days_before(day: date, days: int, *, floor: date) -> date:
    """``day`` minus ``days``, never earlier than ``floor``; underflow past ``date.min`` clamps too."""
    try:
        shifted = day - timedelta(days=days)
    except OverflowError:
        return floor
    return max(shifted, floor)


def _at(day: date, moment: time, tz: tzinfo) -> datetime:
    return datetime.combine(day, moment.replace(tzinfo=None), tzinfo=tz)


def _finalize(ideal: datetime, now: datetime, tz: tzinfo, preferences: ReminderPreferences) -> datetime:
    instant = max(ideal, now).astimezone(tz)
    return shift_out_of_quiet_hours(instant, preferences)


def _trial_key(trial: Trialing, days_before: int) -> str:
    return f"trial:{(trial.end_date - timedelta(days=days_before)).isoformat()}"


def _trial_message(subscription: SubscriptionSnapshot, trial: Trialing, days_before: int) -> str:
    if days_before == 0:
        lead = f"{subscription.name} free trial ends today"
    elif days_before == 1:
        lead = f"{subscription.name} free trial ends tomorrow"
    else:
        lead = f"{subscription.name} free trial ends in {days_before} days"
    if trial.will_convert_to_paid and trial.price_after_trial is not None:
        return f"{lead}, then converts to {trial.price_after_trial} {subscription.currency}"
    return f"{lead} and will not convert to paid"
