from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator

from subtrack.core.config import Settings


BillingCycle = Literal[
    "DAILY",
    "WEEKLY",
    "BIWEEKLY",
    "MONTHLY",
    "QUARTERLY",
    "SEMI_ANNUALLY",
    "YEARLY",
    "LIFETIME",
]
PaymentMethod = Literal[
    "CREDIT_CARD",
    "DEBIT_CARD",
    "PAYPAL",
    "APPLE_PAY",
    "GOOGLE_PAY",
    "BANK_TRANSFER",
    "CASH",
    "OTHER",
]
CancellationDifficulty = Literal["EASY", "MEDIUM", "HARD"]
TrialStatus = Literal["NOT_TRIALING", "EXPIRED", "ENDS_TODAY", "ENDS_TOMORROW", "ENDING_SOON", "ACTIVE"]
TrialOutcome = Literal["CONVERTED", "LAPSED"]
LifecycleState = Literal["TRIALING", "ACTIVE", "PAUSED", "CANCELLED", "LAPSED"]
ReminderType = Literal["RENEWAL", "TRIAL_EXPIRATION", "PRICE_CHANGE", "UNUSED", "CUSTOM"]
ReminderStatus = Literal["SCHEDULED", "SENT", "SNOOZED", "DISMISSED", "FAILED"]
ReminderPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]

REMINDER_TYPES: tuple[ReminderType, ...] = ("RENEWAL", "TRIAL_EXPIRATION", "PRICE_CHANGE", "UNUSED", "CUSTOM")

REMINDER_PRIORITY_BY_TYPE: dict[str, ReminderPriority] = {
    "RENEWAL": "MEDIUM",
    "TRIAL_EXPIRATION": "HIGH",
    "PRICE_CHANGE": "HIGH",
    "UNUSED": "LOW",
    "CUSTOM": "MEDIUM",
}

# Statuses the dispatcher reports once a reminder has left the pending queue.
DELIVERED_REMINDER_STATUSES: frozenset[str] = frozenset({"SENT", "DISMISSED", "FAILED"})

# Delivered rows old enough to drop; FAILED rows stay for inspection.
PRUNABLE_REMINDER_STATUSES: frozenset[str] = frozenset({"SENT", "DISMISSED"})

TRIAL_CONVERSION_REASON = "trial_conversion"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NotTrialing(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["NOT_TRIALING"] = "NOT_TRIALING"


class Trialing(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["TRIALING"] = "TRIALING"
    start_date: date
    end_date: date
    will_convert_to_paid: bool = True
    price_after_trial: Decimal | None = Field(default=None, ge=Decimal("0"))

    @model_validator(mode="after")
    def _check_window(self) -> Trialing:
        if self.end_date < self.start_date:
            raise ValueError("trial end_date must not precede start_date")
        if self.will_convert_to_paid and self.price_after_trial is None:
            raise ValueError("price_after_trial is required when the trial converts to paid")
        return self


class TrialConverted(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["CONVERTED"] = "CONVERTED"
    start_date: date
    end_date: date
    price_after_trial: Decimal | None = None
    converted_at: datetime


class TrialLapsed(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Literal["LAPSED"] = "LAPSED"
    start_date: date
    end_date: date
    lapsed_at: datetime


TrialPhase = Annotated[
    Union[NotTrialing, Trialing, TrialConverted, TrialLapsed],
    Field(discriminator="phase"),
]


class SubscriptionSnapshot(BaseModel):
    """Aggregate root as seen by the engine for one processing batch.

    Trial state lives in ``trial``; the flat ``is_free_trial`` / ``trial_*``
    accessors are read-only views over it so a converted or lapsed trial keeps
    its window as history.
    """

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    name: str = Field(min_length=1)
    price: Decimal = Field(ge=Decimal("0"))
    currency: str = Field(default="USD", min_length=1)
    billing_cycle: BillingCycle
    payment_method: PaymentMethod = "CREDIT_CARD"
    is_active: bool = True
    next_billing_date: date
    last_billing_date: date | None = None
    cancellation_date: datetime | None = None
    auto_renew: bool = True
    total_spent: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    created_at: datetime = Field(default_factory=utcnow)
    trial: TrialPhase = Field(default_factory=NotTrialing)
    enable_renewal_reminder: bool = True
    reminder_days_before: int = Field(default=3, ge=0)
    reminder_time: time | None = None
    last_reminder_sent: datetime | None = None
    last_price_change: datetime | None = None
    usage_count: int = Field(default=0, ge=0)
    last_used_date: date | None = None
    cancellation_difficulty: CancellationDifficulty | None = None
    alternative_suggestions: list[str] = Field(default_factory=list)
    # Store revision this snapshot was read at.
    version: int = Field(default=0, ge=0)

    @property
    def is_free_trial(self) -> bool:
        return isinstance(self.trial, Trialing)

    @property
    def trial_start_date(self) -> date | None:
        return getattr(self.trial, "start_date", None)

    @property
    def trial_end_date(self) -> date | None:
        return getattr(self.trial, "end_date", None)

    @property
    def will_convert_to_paid(self) -> bool:
        return isinstance(self.trial, Trialing) and self.trial.will_convert_to_paid

    @property
    def price_after_trial(self) -> Decimal | None:
        return getattr(self.trial, "price_after_trial", None)


class PriceChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    subscription_id: uuid.UUID
    old_price: Decimal = Field(ge=Decimal("0"))
    new_price: Decimal = Field(ge=Decimal("0"))
    change_date: datetime
    reason: str | None = None
    detected_automatically: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def change_amount(self) -> Decimal:
        return self.new_price - self.old_price

    @computed_field  # type: ignore[prop-decorator]
    @property
    def change_percentage(self) -> Decimal:
        if self.old_price == 0:
            return Decimal("0")
        return self.change_amount / self.old_price * 100

    @computed_field  # type: ignore[prop-decorator]
    @property
    def is_increase(self) -> bool:
        return self.new_price > self.old_price

    @property
    def formatted_change_percentage(self) -> str:
        pct = self.change_percentage.quantize(Decimal("0.1"))
        sign = "+" if pct > 0 else ""
        return f"{sign}{pct}%"


class PriceEdit(BaseModel):
    subscription_id: uuid.UUID
    old_price: Decimal = Field(ge=Decimal("0"))
    new_price: Decimal = Field(ge=Decimal("0"))
    detected_automatically: bool = False
    reason: str | None = None


class ScheduledReminder(BaseModel):
    id: str
    subscription_id: uuid.UUID
    type: ReminderType
    scheduled_at: datetime
    status: ReminderStatus = "SCHEDULED"
    priority: ReminderPriority
    message: str
    dedup_key: str
    snoozed_until: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _derive_priority(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("priority") is None and data.get("type") in REMINDER_PRIORITY_BY_TYPE:
            data = {**data, "priority": REMINDER_PRIORITY_BY_TYPE[data["type"]]}
        return data

    @property
    def is_pending(self) -> bool:
        return self.status == "SCHEDULED"

    @property
    def is_delivered(self) -> bool:
        return self.status in DELIVERED_REMINDER_STATUSES

    def is_snoozed_at(self, now: datetime) -> bool:
        return self.status == "SNOOZED" and self.snoozed_until is not None and self.snoozed_until > now


class ReminderPreferences(BaseModel):
    enabled_types: frozenset[ReminderType] = frozenset(REMINDER_TYPES)
    default_time: time = time(9, 0)
    quiet_hours_enabled: bool = False
    quiet_hours_start: time = time(22, 0)
    quiet_hours_end: time = time(8, 0)
    unused_after_days: int = Field(default=30, ge=1)
    max_daily_reminders: int = Field(default=10, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> ReminderPreferences:
        return cls(
            default_time=settings.default_reminder_time,
            quiet_hours_enabled=settings.quiet_hours_enabled,
            quiet_hours_start=settings.quiet_hours_start,
            quiet_hours_end=settings.quiet_hours_end,
            unused_after_days=settings.unused_after_days,
            max_daily_reminders=settings.max_daily_reminders,
        )


class ReminderDiff(BaseModel):
    subscription_id: uuid.UUID
    to_create: list[ScheduledReminder] = Field(default_factory=list)
    to_update: list[ScheduledReminder] = Field(default_factory=list)
    to_cancel: list[ScheduledReminder] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_cancel)


class TrialEvaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    days_remaining: int | None
    is_expired: bool
    status: TrialStatus


class SubscriptionInsight(BaseModel):
    subscription_id: uuid.UUID
    lifecycle_state: LifecycleState
    trial_status: TrialStatus
    trial_status_text: str
    trial_days_remaining: int | None
    renewal_countdown_days: int | None
    monthly_equivalent: Decimal
    annual_cost: Decimal
    latest_price_change: PriceChange | None = None
    formatted_change_percentage: str | None = None


class ProcessingReport(BaseModel):
    run_id: str
    started_at: datetime
    finished_at: datetime | None = None
    processed: int = 0
    renewed: int = 0
    cycles_applied: int = 0
    trials_converted: int = 0
    trials_lapsed: int = 0
    price_changes_recorded: int = 0
    reminders_created: int = 0
    reminders_updated: int = 0
    reminders_cancelled: int = 0
    failed_subscription_ids: list[uuid.UUID] = Field(default_factory=list)
    stale_subscription_ids: list[uuid.UUID] = Field(default_factory=list)
    reminders_pruned: int = 0
    stopped_early: bool = False


class ReminderStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_scheduled: int = 0
    total_sent: int = 0
    total_snoozed: int = 0
    total_dismissed: int = 0
    upcoming_today: int = 0
    upcoming_week: int = 0
    overdue_count: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> Decimal:
        """Share of sent reminders among scheduled plus sent, as a percentage."""
        total = self.total_scheduled + self.total_sent
        if total == 0:
            return Decimal("0.0")
        return (Decimal(self.total_sent) / total * 100).quantize(Decimal("0.1"))
