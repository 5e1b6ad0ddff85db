from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from subtrack import events
from subtrack.lifecycle.errors import ReconciliationConflict
from subtrack.lifecycle.reminders import (
    SnoozeOption,
    dismiss,
    reminder_statistics,
    should_send_reminder,
    snooze,
    snooze_until,
)
from subtrack.lifecycle.repository import SubscriptionStore
from subtrack.lifecycle.schemas import (
    ReminderDiff,
    ReminderPreferences,
    ReminderStatistics,
    ScheduledReminder,
    SubscriptionSnapshot,
)
from subtrack.metrics import observe_reminder_conflict


logger = logging.getLogger(__name__)


class NotificationDispatcher(Protocol):
    def dispatch(self, diffs: Sequence[ReminderDiff]) -> None: ...


def _log_conflict(conflict: ReconciliationConflict) -> None:
    observe_reminder_conflict()
    logger.warning(
        "reminder.reconciliation_conflict",
        extra={"reminder_id": conflict.reminder_id, "status": conflict.status, "error": str(conflict)},
    )


@dataclass(slots=True)
class InMemoryNotificationDispatcher:
    """Keeps the authoritative delivery book in memory and reports delivery back to a store."""

    status_sink: SubscriptionStore | None = None
    book: dict[str, ScheduledReminder] = field(default_factory=dict)
    dispatched: list[ReminderDiff] = field(default_factory=list)
    conflicts: list[ReconciliationConflict] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def dispatch(self, diffs: Sequence[ReminderDiff]) -> None:
        with self._lock:
            for diff in diffs:
                self.dispatched.append(diff)
                for reminder in diff.to_cancel:
                    current = self.book.get(reminder.id)
                    if current is not None and current.is_delivered:
                        conflict = ReconciliationConflict(reminder.id, current.status, "cancel")
                        self.conflicts.append(conflict)
                        _log_conflict(conflict)
                        continue
                    self.book.pop(reminder.id, None)
                for reminder in [*diff.to_create, *diff.to_update]:
                    current = self.book.get(reminder.id)
                    if current is not None and current.is_delivered:
                        conflict = ReconciliationConflict(reminder.id, current.status, "reschedule")
                        self.conflicts.append(conflict)
                        _log_conflict(conflict)
                        continue
                    self.book[reminder.id] = reminder

    def pending(self) -> list[ScheduledReminder]:
        with self._lock:
            return sorted((item for item in self.book.values() if item.is_pending), key=lambda item: item.scheduled_at)

    def due(self, now: datetime) -> list[ScheduledReminder]:
        return [item for item in self.pending() if item.scheduled_at <= now]

    def deliverable(
        self,
        now: datetime,
        subscriptions: Iterable[SubscriptionSnapshot],
        preferences: ReminderPreferences,
    ) -> list[ScheduledReminder]:
        """Due reminders that pass the delivery gate, counting earlier picks as sent now."""
        by_id = {item.id: item for item in subscriptions}
        with self._lock:
            book = list(self.book.values())
        chosen: list[ScheduledReminder] = []
        for reminder in self.due(now):
            subscription = by_id.get(reminder.subscription_id)
            if subscription is None or any(item.subscription_id == subscription.id for item in chosen):
                continue
            planned = [item.model_copy(update={"status": "SENT", "scheduled_at": now}) for item in chosen]
            if should_send_reminder(subscription, [*book, *planned], now, preferences):
                chosen.append(reminder)
        return chosen

    def statistics(self, now: datetime) -> ReminderStatistics:
        with self._lock:
            book = list(self.book.values())
        return reminder_statistics(book, now)

    def mark_sent(self, reminder_id: str, at: datetime) -> ScheduledReminder:
        return self._transition(reminder_id, at, lambda item: item.model_copy(update={"status": "SENT"}))

    def mark_failed(self, reminder_id: str, at: datetime) -> ScheduledReminder:
        return self._transition(reminder_id, at, lambda item: item.model_copy(update={"status": "FAILED"}))

    def snooze(self, reminder_id: str, option: SnoozeOption, now: datetime) -> ScheduledReminder:
        until = snooze_until(option, now)
        return self._transition(reminder_id, now, lambda item: snooze(item, until))

    def dismiss(self, reminder_id: str, at: datetime) -> ScheduledReminder:
        return self._transition(reminder_id, at, dismiss)

    def _transition(
        self,
        reminder_id: str,
        at: datetime,
        change: Callable[[ScheduledReminder], ScheduledReminder],
    ) -> ScheduledReminder:
        with self._lock:
            current = self.book.get(reminder_id)
            if current is None:
                raise KeyError(reminder_id)
            updated = change(current)
            self.book[reminder_id] = updated
        logger.info(
            "reminder.status_changed",
            extra={"reminder_id": reminder_id, "reminder_type": updated.type, "status": updated.status},
        )
        if self.status_sink is not None:
            self.status_sink.record_reminder_status(updated, at=at)
        return updated


@dataclass(slots=True)
class EventNotificationDispatcher:
    """Publishes reminder instructions on the in-process event bus for an external delivery service."""

    def dispatch(self, diffs: Sequence[ReminderDiff]) -> None:
        for diff in diffs:
            for reminder in diff.to_create:
                events.publish(events.REMINDER_SCHEDULED, self._payload(reminder))
            for reminder in diff.to_update:
                events.publish(events.REMINDER_RESCHEDULED, self._payload(reminder))
            for reminder in diff.to_cancel:
                events.publish(events.REMINDER_CANCELLED, self._payload(reminder))

    @staticmethod
    def _payload(reminder: ScheduledReminder) -> dict[str, object]:
        return {
            "reminder_id": reminder.id,
            "subscription_id": str(reminder.subscription_id),
            "reminder_type": reminder.type,
            "priority": reminder.priority,
            "scheduled_at": reminder.scheduled_at.isoformat(),
            "message": reminder.message,
            "dedup_key": reminder.dedup_key,
        }
