from subtrack.lifecycle.api import router
from subtrack.lifecycle.dispatch import EventNotificationDispatcher, InMemoryNotificationDispatcher, NotificationDispatcher
from subtrack.lifecycle.ledger import PriceHistoryLedger
from subtrack.lifecycle.models import SubscriptionPriceChange, SubscriptionReminder, TrackedSubscription
from subtrack.lifecycle.reminders import ReminderPolicyEngine
from subtrack.lifecycle.repository import (
    InMemorySubscriptionStore,
    SqlAlchemySubscriptionStore,
    SubscriptionBatch,
    SubscriptionStore,
)
from subtrack.lifecycle.schemas import (
    PriceChange,
    ProcessingReport,
    ReminderDiff,
    ReminderPreferences,
    ReminderStatistics,
    ScheduledReminder,
    SubscriptionInsight,
    SubscriptionSnapshot,
)
from subtrack.lifecycle.service import RenewalProcessor, build_insight

__all__ = [
    "router",
    "TrackedSubscription",
    "SubscriptionPriceChange",
    "SubscriptionReminder",
    "SubscriptionSnapshot",
    "PriceChange",
    "ScheduledReminder",
    "ReminderPreferences",
    "ReminderDiff",
    "ReminderStatistics",
    "SubscriptionInsight",
    "ProcessingReport",
    "PriceHistoryLedger",
    "ReminderPolicyEngine",
    "SubscriptionStore",
    "SubscriptionBatch",
    "InMemorySubscriptionStore",
    "SqlAlchemySubscriptionStore",
    "NotificationDispatcher",
    "InMemoryNotificationDispatcher",
    "EventNotificationDispatcher",
    "RenewalProcessor",
    "build_insight",
]
