from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from subtrack.core.config import get_settings
from subtrack.core.database import SessionLocal
from subtrack.lifecycle.calendar import quantize_amount
from subtrack.lifecycle.errors import InvalidSubscriptionError, SubscriptionNotFoundError
from subtrack.lifecycle.models import SubscriptionPriceChange, SubscriptionReminder, TrackedSubscription
from subtrack.lifecycle.reminders import apply_diff
from subtrack.lifecycle.schemas import (
    PRUNABLE_REMINDER_STATUSES,
    PriceChange,
    PriceEdit,
    ReminderDiff,
    ReminderPreferences,
    ScheduledReminder,
    SubscriptionSnapshot,
)


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubscriptionBatch:
    subscriptions: list[SubscriptionSnapshot]
    reminders: dict[uuid.UUID, list[ScheduledReminder]] = field(default_factory=dict)
    price_changes: list[PriceChange] = field(default_factory=list)
    price_edits: list[PriceEdit] = field(default_factory=list)
    reminder_config_changed: set[uuid.UUID] = field(default_factory=set)
    preferences: ReminderPreferences = field(default_factory=ReminderPreferences)
    rejected_ids: list[str] = field(default_factory=list)

    def edits_for(self, subscription_id: uuid.UUID) -> list[PriceEdit]:
        return [edit for edit in self.price_edits if edit.subscription_id == subscription_id]


@dataclass(slots=True)
class BatchResult:
    run_id: str
    subscriptions: list[SubscriptionSnapshot] = field(default_factory=list)
    price_changes: list[PriceChange] = field(default_factory=list)
    diffs: list[ReminderDiff] = field(default_factory=list)


class SubscriptionStore(Protocol):
    def load_batch(self) -> SubscriptionBatch: ...

    def save_batch(self, result: BatchResult) -> list[uuid.UUID]:
        """Persist a batch; returns ids skipped because the stored version moved past the snapshot's."""
        ...

    def get(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot: ...

    def price_history(self, subscription_id: uuid.UUID) -> list[PriceChange]: ...

    def record_reminder_status(self, reminder: ScheduledReminder, *, at: datetime) -> None: ...

    def prune_reminders(self, before: datetime) -> int: ...


def reminder_config_fingerprint(subscription: SubscriptionSnapshot) -> str:
    reminder_time = subscription.reminder_time.isoformat() if subscription.reminder_time else ""
    return f"{int(subscription.enable_renewal_reminder)}|{subscription.reminder_days_before}|{reminder_time}"


def _price_edit(subscription: SubscriptionSnapshot, observed: Decimal | None) -> PriceEdit | None:
    if observed is None or quantize_amount(observed) == quantize_amount(subscription.price):
        return None
    return PriceEdit(subscription_id=subscription.id, old_price=observed, new_price=subscription.price)


def _prunable(reminder: ScheduledReminder, before: datetime) -> bool:
    return reminder.status in PRUNABLE_REMINDER_STATUSES and reminder.scheduled_at < before


@dataclass(slots=True)
class InMemorySubscriptionStore:
    preferences: ReminderPreferences = field(default_factory=lambda: ReminderPreferences.from_settings(get_settings()))
    subscriptions: dict[uuid.UUID, SubscriptionSnapshot] = field(default_factory=dict)
    reminders: dict[uuid.UUID, list[ScheduledReminder]] = field(default_factory=dict)
    price_changes: list[PriceChange] = field(default_factory=list)
    _observed_price: dict[uuid.UUID, Decimal] = field(default_factory=dict)
    _observed_config: dict[uuid.UUID, str] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, subscription: SubscriptionSnapshot) -> SubscriptionSnapshot:
        with self._lock:
            self.subscriptions[subscription.id] = subscription.model_copy(deep=True)
        return subscription

    def edit(self, subscription_id: uuid.UUID, **changes: Any) -> SubscriptionSnapshot:
        with self._lock:
            current = self.subscriptions.get(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(subscription_id)
            updated = SubscriptionSnapshot.model_validate(
                {**current.model_dump(), **changes, "version": current.version + 1}
            )
            self.subscriptions[subscription_id] = updated
        return updated.model_copy(deep=True)

    def get(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        with self._lock:
            current = self.subscriptions.get(subscription_id)
            if current is None:
                raise SubscriptionNotFoundError(subscription_id)
            return current.model_copy(deep=True)

    def price_history(self, subscription_id: uuid.UUID) -> list[PriceChange]:
        with self._lock:
            rows = [row for row in self.price_changes if row.subscription_id == subscription_id]
        return sorted(rows, key=lambda row: row.change_date)

    def load_batch(self) -> SubscriptionBatch:
        with self._lock:
            subscriptions = [item.model_copy(deep=True) for item in self.subscriptions.values()]
            batch = SubscriptionBatch(
                subscriptions=subscriptions,
                reminders={key: list(rows) for key, rows in self.reminders.items()},
                price_changes=list(self.price_changes),
                preferences=self.preferences,
            )
            for subscription in subscriptions:
                edit = _price_edit(subscription, self._observed_price.get(subscription.id))
                if edit is not None:
                    batch.price_edits.append(edit)
                if self._observed_config.get(subscription.id) != reminder_config_fingerprint(subscription):
                    batch.reminder_config_changed.add(subscription.id)
        return batch

    def save_batch(self, result: BatchResult) -> list[uuid.UUID]:
        stale: list[uuid.UUID] = []
        with self._lock:
            for subscription in result.subscriptions:
                current = self.subscriptions.get(subscription.id)
                if current is None or current.version != subscription.version:
                    stale.append(subscription.id)
                    continue
                self.subscriptions[subscription.id] = subscription.model_copy(
                    update={"version": subscription.version + 1}, deep=True
                )
                self._observed_price[subscription.id] = subscription.price
                self._observed_config[subscription.id] = reminder_config_fingerprint(subscription)
            self.price_changes.extend(change for change in result.price_changes if change.subscription_id not in stale)
            for diff in result.diffs:
                if diff.subscription_id in stale:
                    continue
                self.reminders[diff.subscription_id] = apply_diff(self.reminders.get(diff.subscription_id, []), diff)
        for subscription_id in stale:
            logger.warning("subscription.save_skipped", extra={"subscription_id": str(subscription_id), "status": "stale"})
        return stale

    def record_reminder_status(self, reminder: ScheduledReminder, *, at: datetime) -> None:
        with self._lock:
            rows = [row for row in self.reminders.get(reminder.subscription_id, []) if row.id != reminder.id]
            rows.append(reminder)
            self.reminders[reminder.subscription_id] = rows
            subscription = self.subscriptions.get(reminder.subscription_id)
            if subscription is not None and reminder.type == "RENEWAL" and reminder.status == "SENT":
                self.subscriptions[subscription.id] = subscription.model_copy(
                    update={"last_reminder_sent": at, "version": subscription.version + 1}
                )

    def prune_reminders(self, before: datetime) -> int:
        removed = 0
        with self._lock:
            for subscription_id, rows in self.reminders.items():
                kept = [row for row in rows if not _prunable(row, before)]
                removed += len(rows) - len(kept)
                self.reminders[subscription_id] = kept
        return removed


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc)


@dataclass(slots=True)
class SqlAlchemySubscriptionStore:
    session_factory: Callable[[], Session] = SessionLocal
    preferences: ReminderPreferences = field(default_factory=lambda: ReminderPreferences.from_settings(get_settings()))

    def get(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        with self.session_factory() as session:
            row = session.get(TrackedSubscription, subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(subscription_id)
            return self._to_snapshot(row)

    def price_history(self, subscription_id: uuid.UUID) -> list[PriceChange]:
        with self.session_factory() as session:
            rows = session.scalars(
                select(SubscriptionPriceChange)
                .where(SubscriptionPriceChange.subscription_id == subscription_id)
                .order_by(SubscriptionPriceChange.change_date.asc())
            ).all()
            return [self._to_price_change(row) for row in rows]

    def load_batch(self) -> SubscriptionBatch:
        with self.session_factory() as session:
            rows = session.scalars(select(TrackedSubscription).order_by(TrackedSubscription.created_at.asc())).all()
            batch = SubscriptionBatch(subscriptions=[], preferences=self.preferences)
            for row in rows:
                try:
                    subscription = self._to_snapshot(row)
                except InvalidSubscriptionError as exc:
                    logger.warning("subscription.rejected", extra={"subscription_id": str(row.id), "error": str(exc)[:500]})
                    batch.rejected_ids.append(str(row.id))
                    continue
                batch.subscriptions.append(subscription)
                edit = _price_edit(subscription, row.observed_price)
                if edit is not None:
                    batch.price_edits.append(edit)
                if row.observed_reminder_config != reminder_config_fingerprint(subscription):
                    batch.reminder_config_changed.add(subscription.id)

            loaded = {item.id for item in batch.subscriptions}
            for change_row in session.scalars(select(SubscriptionPriceChange)).all():
                if change_row.subscription_id in loaded:
                    batch.price_changes.append(self._to_price_change(change_row))
            for reminder_row in session.scalars(select(SubscriptionReminder)).all():
                if reminder_row.subscription_id in loaded:
                    batch.reminders.setdefault(reminder_row.subscription_id, []).append(self._to_reminder(reminder_row))
        return batch

    def save_batch(self, result: BatchResult) -> list[uuid.UUID]:
        stale: list[uuid.UUID] = []
        with self.session_factory() as session:
            try:
                for subscription in result.subscriptions:
                    # Claim the row only if nobody wrote it since the snapshot was read.
                    claimed = session.execute(
                        update(TrackedSubscription)
                        .where(
                            TrackedSubscription.id == subscription.id,
                            TrackedSubscription.version == subscription.version,
                        )
                        .values(version=TrackedSubscription.version + 1)
                    ).rowcount
                    row = session.get(TrackedSubscription, subscription.id) if claimed else None
                    if row is None:
                        logger.warning(
                            "subscription.save_skipped",
                            extra={"subscription_id": str(subscription.id), "status": "stale"},
                        )
                        stale.append(subscription.id)
                        continue
                    self._apply_snapshot(row, subscription)
                    row.observed_price = subscription.price
                    row.observed_reminder_config = reminder_config_fingerprint(subscription)
                    session.add(row)

                for change in result.price_changes:
                    if change.subscription_id in stale:
                        continue
                    session.add(
                        SubscriptionPriceChange(
                            id=change.id,
                            subscription_id=change.subscription_id,
                            old_price=change.old_price,
                            new_price=change.new_price,
                            change_date=_utc(change.change_date),
                            reason=change.reason,
                            detected_automatically=change.detected_automatically,
                        )
                    )

                for diff in result.diffs:
                    if diff.subscription_id in stale:
                        continue
                    for reminder in [*diff.to_create, *diff.to_update]:
                        session.merge(self._to_reminder_row(reminder))
                    for reminder in diff.to_cancel:
                        reminder_row = session.get(SubscriptionReminder, reminder.id)
                        if reminder_row is not None:
                            session.delete(reminder_row)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception("renewal.save_failed", extra={"error": str(exc)[:500]})
                raise
        return stale

    def record_reminder_status(self, reminder: ScheduledReminder, *, at: datetime) -> None:
        with self.session_factory() as session:
            session.merge(self._to_reminder_row(reminder))
            if reminder.type == "RENEWAL" and reminder.status == "SENT":
                row = session.get(TrackedSubscription, reminder.subscription_id)
                if row is not None:
                    row.last_reminder_sent = _utc(at)
                    row.version = row.version + 1
                    session.add(row)
            session.commit()

    def prune_reminders(self, before: datetime) -> int:
        with self.session_factory() as session:
            removed = session.execute(
                delete(SubscriptionReminder).where(
                    SubscriptionReminder.status.in_(PRUNABLE_REMINDER_STATUSES),
                    SubscriptionReminder.scheduled_at < _utc(before),
                )
            ).rowcount
            session.commit()
        return removed or 0

    @staticmethod
    def _to_snapshot(row: TrackedSubscription) -> SubscriptionSnapshot:
        trial: dict[str, Any] = {"phase": row.trial_phase}
        if row.trial_phase != "NOT_TRIALING":
            trial.update(start_date=row.trial_start_date, end_date=row.trial_end_date)
        if row.trial_phase == "TRIALING":
            trial.update(will_convert_to_paid=row.will_convert_to_paid, price_after_trial=row.price_after_trial)
        elif row.trial_phase == "CONVERTED":
            trial.update(price_after_trial=row.price_after_trial, converted_at=_aware(row.trial_resolved_at))
        elif row.trial_phase == "LAPSED":
            trial.update(lapsed_at=_aware(row.trial_resolved_at))

        payload = {
            "id": row.id,
            "name": row.name,
            "price": row.price,
            "currency": row.currency,
            "billing_cycle": row.billing_cycle,
            "payment_method": row.payment_method,
            "is_active": row.is_active,
            "next_billing_date": row.next_billing_date,
            "last_billing_date": row.last_billing_date,
            "cancellation_date": _aware(row.cancellation_date),
            "auto_renew": row.auto_renew,
            "total_spent": row.total_spent,
            "created_at": _aware(row.created_at),
            "trial": trial,
            "enable_renewal_reminder": row.enable_renewal_reminder,
            "reminder_days_before": row.reminder_days_before,
            "reminder_time": row.reminder_time,
            "last_reminder_sent": _aware(row.last_reminder_sent),
            "last_price_change": _aware(row.last_price_change),
            "usage_count": row.usage_count,
            "last_used_date": row.last_used_date,
            "cancellation_difficulty": row.cancellation_difficulty,
            "alternative_suggestions": list(row.alternative_suggestions or []),
            "version": row.version,
        }
        try:
            return SubscriptionSnapshot.model_validate(payload)
        except ValidationError as exc:
            raise InvalidSubscriptionError.from_validation_error(row.id, exc) from exc

    @staticmethod
    def _apply_snapshot(row: TrackedSubscription, subscription: SubscriptionSnapshot) -> None:
        trial = subscription.trial
        row.price = subscription.price
        row.is_active = subscription.is_active
        row.next_billing_date = subscription.next_billing_date
        row.last_billing_date = subscription.last_billing_date
        row.cancellation_date = _utc(subscription.cancellation_date)
        row.auto_renew = subscription.auto_renew
        row.total_spent = subscription.total_spent
        row.trial_phase = trial.phase
        row.trial_start_date = subscription.trial_start_date
        row.trial_end_date = subscription.trial_end_date
        row.price_after_trial = subscription.price_after_trial
        row.trial_resolved_at = _utc(getattr(trial, "converted_at", None) or getattr(trial, "lapsed_at", None))
        row.last_reminder_sent = _utc(subscription.last_reminder_sent)
        row.last_price_change = _utc(subscription.last_price_change)

    @staticmethod
    def _to_price_change(row: SubscriptionPriceChange) -> PriceChange:
        return PriceChange(
            id=row.id,
            subscription_id=row.subscription_id,
            old_price=row.old_price,
            new_price=row.new_price,
            change_date=_aware(row.change_date),
            reason=row.reason,
            detected_automatically=row.detected_automatically,
        )

    @staticmethod
    def _to_reminder(row: SubscriptionReminder) -> ScheduledReminder:
        return ScheduledReminder(
            id=row.id,
            subscription_id=row.subscription_id,
            type=row.type,
            scheduled_at=_aware(row.scheduled_at),
            status=row.status,
            priority=row.priority,
            message=row.message,
            dedup_key=row.dedup_key,
            snoozed_until=_aware(row.snoozed_until),
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _to_reminder_row(reminder: ScheduledReminder) -> SubscriptionReminder:
        return SubscriptionReminder(
            id=reminder.id,
            subscription_id=reminder.subscription_id,
            type=reminder.type,
            scheduled_at=_utc(reminder.scheduled_at),
            status=reminder.status,
            priority=reminder.priority,
            message=reminder.message,
            dedup_key=reminder.dedup_key,
            snoozed_until=_utc(reminder.snoozed_until),
            created_at=_utc(reminder.created_at),
        )
