from __future__ import annotations

import uuid
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Time, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from subtrack.core.database import Base
from subtrack.lifecycle.schemas import utcnow


class TrackedSubscription(Base):
    __tablename__ = "tracked_subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(16), nullable=False, default="USD", server_default="USD")
    billing_cycle: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="CREDIT_CARD", server_default="CREDIT_CARD")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    next_billing_date: Mapped[date] = mapped_column(Date(), nullable=False)
    last_billing_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    cancellation_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    total_spent: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    trial_phase: Mapped[str] = mapped_column(String(32), nullable=False, default="NOT_TRIALING", server_default="NOT_TRIALING")
    trial_start_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    trial_end_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    will_convert_to_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    price_after_trial: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    trial_resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    enable_renewal_reminder: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    reminder_days_before: Mapped[int] = mapped_column(Integer, nullable=False, default=3, server_default="3")
    reminder_time: Mapped[time | None] = mapped_column(Time(), nullable=True)
    last_reminder_sent: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_price_change: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_used_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    cancellation_difficulty: Mapped[str | None] = mapped_column(String(16), nullable=True)
    alternative_suggestions: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Values the engine last processed; a mismatch means an external edit happened since.
    observed_price: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    observed_reminder_config: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Bumped on every engine write; batch saves only land on the version they read.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    __table_args__ = (
        Index("ix_tracked_subscription_next_billing", "is_active", "next_billing_date"),
    )


class SubscriptionPriceChange(Base):
    __tablename__ = "subscription_price_change"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tracked_subscription.id", ondelete="CASCADE"), nullable=False
    )
    old_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    new_price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    change_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    detected_automatically: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    __table_args__ = (
        Index("ix_subscription_price_change_subscription_date", "subscription_id", "change_date"),
    )


class SubscriptionReminder(Base):
    __tablename__ = "subscription_reminder"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("tracked_subscription.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="SCHEDULED", server_default="SCHEDULED")
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    message: Mapped[str] = mapped_column(String(1024), nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(255), nullable=False)
    snoozed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_subscription_reminder_subscription_status", "subscription_id", "status"),
    )
