from __future__ import annotations

import uuid
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Query, status

from subtrack.core.clock import Clock, SystemClock
from subtrack.lifecycle.dispatch import EventNotificationDispatcher
from subtrack.lifecycle.errors import (
    InvalidSubscriptionError,
    InvalidTransitionError,
    LifecycleError,
    StaleSubscriptionError,
    SubscriptionNotFoundError,
)
from subtrack.lifecycle.repository import SqlAlchemySubscriptionStore, SubscriptionStore
from subtrack.lifecycle.reminders import reminder_statistics
from subtrack.lifecycle.schemas import (
    PriceChange,
    ProcessingReport,
    ReminderStatistics,
    SubscriptionInsight,
    SubscriptionSnapshot,
)
from subtrack.lifecycle.service import RenewalProcessor, build_insight, upcoming_renewals
from subtrack.lifecycle.trial import trials_ending_soon


router = APIRouter(tags=["lifecycle"])


def get_store() -> SubscriptionStore:
    return SqlAlchemySubscriptionStore()


def get_clock() -> Clock:
    return SystemClock()


def get_processor(
    store: SubscriptionStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> RenewalProcessor:
    return RenewalProcessor(store=store, dispatcher=EventNotificationDispatcher(), clock=clock)


def _raise_http(exc: LifecycleError) -> NoReturn:
    if isinstance(exc, SubscriptionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="subscription not found") from exc
    if isinstance(exc, (InvalidTransitionError, StaleSubscriptionError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, InvalidSubscriptionError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.errors) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


@router.post("/renewals/run", response_model=ProcessingReport)
def run_renewals(processor: RenewalProcessor = Depends(get_processor)) -> ProcessingReport:
    return processor.run()


@router.get("/subscriptions/upcoming-renewals", response_model=list[SubscriptionSnapshot])
def list_upcoming_renewals(
    within_days: int = Query(default=7, ge=0, le=366),
    store: SubscriptionStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> list[SubscriptionSnapshot]:
    return upcoming_renewals(store.load_batch().subscriptions, clock.today(), within_days)


@router.get("/reminders/statistics", response_model=ReminderStatistics)
def get_reminder_statistics(
    store: SubscriptionStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> ReminderStatistics:
    batch = store.load_batch()
    return reminder_statistics(
        [reminder for reminders in batch.reminders.values() for reminder in reminders],
        clock.now(),
    )


@router.get("/trials/ending-soon", response_model=list[SubscriptionSnapshot])
def list_trials_ending_soon(
    within_days: int = Query(default=7, ge=0, le=366),
    store: SubscriptionStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> list[SubscriptionSnapshot]:
    return trials_ending_soon(store.load_batch().subscriptions, clock.today(), within_days)


@router.get("/subscriptions/{subscription_id}/insights", response_model=SubscriptionInsight)
def get_subscription_insight(
    subscription_id: uuid.UUID,
    store: SubscriptionStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> SubscriptionInsight:
    try:
        subscription = store.get(subscription_id)
    except LifecycleError as exc:
        _raise_http(exc)
    history = store.price_history(subscription_id)
    return build_insight(subscription, clock.today(), latest_price_change=history[-1] if history else None)


@router.get("/subscriptions/{subscription_id}/price-history", response_model=list[PriceChange])
def get_price_history(subscription_id: uuid.UUID, store: SubscriptionStore = Depends(get_store)) -> list[PriceChange]:
    try:
        store.get(subscription_id)
    except LifecycleError as exc:
        _raise_http(exc)
    return store.price_history(subscription_id)


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionSnapshot)
def pause_subscription(subscription_id: uuid.UUID, processor: RenewalProcessor = Depends(get_processor)) -> SubscriptionSnapshot:
    try:
        return processor.pause(subscription_id)
    except LifecycleError as exc:
        _raise_http(exc)


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionSnapshot)
def resume_subscription(subscription_id: uuid.UUID, processor: RenewalProcessor = Depends(get_processor)) -> SubscriptionSnapshot:
    try:
        return processor.resume(subscription_id)
    except LifecycleError as exc:
        _raise_http(exc)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionSnapshot)
def cancel_subscription(subscription_id: uuid.UUID, processor: RenewalProcessor = Depends(get_processor)) -> SubscriptionSnapshot:
    try:
        return processor.cancel(subscription_id)
    except LifecycleError as exc:
        _raise_http(exc)
