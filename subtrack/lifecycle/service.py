from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from subtrack.context import bound_run_id
from subtrack.core.clock import Clock, SystemClock
from subtrack.core.config import Settings, get_settings
from subtrack.lifecycle.calendar import NEVER, annual_cost, days_until, monthly_equivalent, next_billing_date
from subtrack.lifecycle.dispatch import NotificationDispatcher
from subtrack.lifecycle.errors import InvalidTransitionError, StaleSubscriptionError, SubscriptionNotFoundError
from subtrack.lifecycle.ledger import PriceHistoryLedger
from subtrack.lifecycle.reminders import ReminderPolicyEngine
from subtrack.lifecycle.repository import BatchResult, SubscriptionBatch, SubscriptionStore
from subtrack.lifecycle.schemas import (
    TRIAL_CONVERSION_REASON,
    LifecycleState,
    PriceChange,
    ProcessingReport,
    ReminderDiff,
    SubscriptionInsight,
    SubscriptionSnapshot,
    TrialLapsed,
    Trialing,
    TrialOutcome,
)
from subtrack.lifecycle.trial import apply_trial_outcome, describe_trial_status, evaluate_trial
from subtrack.metrics import (
    observe_cycles_applied,
    observe_reminder_instructions,
    observe_renewal_run,
    observe_subscription_failure,
    observe_trial_outcome,
)


logger = logging.getLogger(__name__)
tracer = trace.get_tracer("subtrack.lifecycle.renewals")

VALID_LIFECYCLE_TRANSITIONS: dict[str, set[str]] = {
    "TRIALING": {"ACTIVE", "LAPSED"},
    "ACTIVE": {"ACTIVE", "PAUSED", "CANCELLED"},
    "PAUSED": {"ACTIVE", "CANCELLED"},
    "CANCELLED": set(),
    "LAPSED": set(),
}

DUE_SOON_DAYS = 3


def lifecycle_state(subscription: SubscriptionSnapshot) -> LifecycleState:
    if isinstance(subscription.trial, Trialing):
        return "TRIALING"
    if isinstance(subscription.trial, TrialLapsed):
        return "LAPSED"
    if subscription.is_active:
        return "ACTIVE"
    if subscription.cancellation_date is not None:
        return "CANCELLED"
    return "PAUSED"


def is_overdue(subscription: SubscriptionSnapshot, today: date) -> bool:
    return subscription.is_active and subscription.next_billing_date < today


def is_due_soon(subscription: SubscriptionSnapshot, today: date, within_days: int = DUE_SOON_DAYS) -> bool:
    remaining = days_until(subscription.next_billing_date, today)
    return subscription.is_active and remaining is not None and 0 <= remaining <= within_days


def upcoming_renewals(
    subscriptions: Iterable[SubscriptionSnapshot],
    today: date,
    within_days: int = 7,
) -> list[SubscriptionSnapshot]:
    upcoming: list[SubscriptionSnapshot] = []
    for item in subscriptions:
        remaining = days_until(item.next_billing_date, today)
        if item.is_active and remaining is not None and 0 <= remaining <= within_days:
            upcoming.append(item)
    return sorted(upcoming, key=lambda item: item.next_billing_date)


def build_insight(
    subscription: SubscriptionSnapshot,
    today: date,
    *,
    latest_price_change: PriceChange | None = None,
) -> SubscriptionInsight:
    evaluation = evaluate_trial(subscription, today)
    countdown = None
    if subscription.is_active and subscription.next_billing_date != NEVER:
        countdown = days_until(subscription.next_billing_date, today)
    return SubscriptionInsight(
        subscription_id=subscription.id,
        lifecycle_state=lifecycle_state(subscription),
        trial_status=evaluation.status,
        trial_status_text=describe_trial_status(evaluation),
        trial_days_remaining=evaluation.days_remaining,
        renewal_countdown_days=countdown,
        monthly_equivalent=monthly_equivalent(subscription.price, subscription.billing_cycle),
        annual_cost=annual_cost(subscription.price, subscription.billing_cycle),
        latest_price_change=latest_price_change,
        formatted_change_percentage=latest_price_change.formatted_change_percentage if latest_price_change else None,
    )


@dataclass(slots=True)
class _SubscriptionOutcome:
    subscription: SubscriptionSnapshot
    diff: ReminderDiff | None = None
    cycles_applied: int = 0
    trial_outcome: TrialOutcome | None = None
    price_changes: int = 0


@dataclass(slots=True)
class RenewalProcessor:
    store: SubscriptionStore
    dispatcher: NotificationDispatcher
    clock: Clock = field(default_factory=SystemClock)
    ledger: PriceHistoryLedger = field(default_factory=PriceHistoryLedger)
    reminder_engine: ReminderPolicyEngine = field(default_factory=ReminderPolicyEngine)
    settings: Settings = field(default_factory=get_settings)
    max_workers: int | None = None

    def run(self, *, stop_requested: Callable[[], bool] | None = None) -> ProcessingReport:
        run_id = uuid.uuid4().hex
        with bound_run_id(run_id):
            report = self._run(run_id, stop_requested)
        report.finished_at = self.clock.now()
        return report

    def _run(self, run_id: str, stop_requested: Callable[[], bool] | None) -> ProcessingReport:
        started = time.perf_counter()
        now = self.clock.now()
        today = self.clock.today()
        report = ProcessingReport(run_id=run_id, started_at=now)
        final_status = "failed"
        try:
            with tracer.start_as_current_span("renewal.run") as run_span:
                run_span.set_attribute("run_id", run_id)
                report.reminders_pruned = self.store.prune_reminders(
                    now - timedelta(days=self.settings.reminder_retention_days)
                )
                batch = self.store.load_batch()
                self.ledger.load(batch.price_changes)
                logger.info("renewal.run.started", extra={"processed": len(batch.subscriptions)})

                outcomes = self._process_batch(batch, now, today, stop_requested, report)
                result = BatchResult(
                    run_id=run_id,
                    subscriptions=[outcome.subscription for outcome in outcomes],
                    price_changes=self.ledger.pending_changes(),
                    diffs=[outcome.diff for outcome in outcomes if outcome.diff is not None and not outcome.diff.is_empty],
                )
                try:
                    stale = set(self.store.save_batch(result))
                except Exception as exc:
                    for outcome in outcomes:
                        self.ledger.rollback(outcome.subscription.id)
                    run_span.record_exception(exc)
                    run_span.set_status(Status(StatusCode.ERROR, str(exc)))
                    raise
                if stale:
                    outcomes = self._drop_stale(stale, outcomes, result, report)
                self.ledger.commit()
                self.dispatcher.dispatch(result.diffs)

                self._summarize(report, outcomes, result)
                run_span.set_attribute("processed", report.processed)
                run_span.set_attribute("failed", len(report.failed_subscription_ids))
                final_status = (
                    "partial"
                    if report.failed_subscription_ids or report.stale_subscription_ids or report.stopped_early
                    else "succeeded"
                )
        finally:
            duration = time.perf_counter() - started
            observe_renewal_run(final_status, duration)
            logger.info(
                "renewal.run.finished",
                extra={
                    "status": final_status,
                    "processed": report.processed,
                    "failed": len(report.failed_subscription_ids),
                    "duration_ms": round(duration * 1000, 2),
                },
            )
        return report

    def pause(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        return self._command(subscription_id, "PAUSED")

    def resume(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        return self._command(subscription_id, "ACTIVE")

    def cancel(self, subscription_id: uuid.UUID) -> SubscriptionSnapshot:
        return self._command(subscription_id, "CANCELLED")

    def _command(self, subscription_id: uuid.UUID, target: LifecycleState) -> SubscriptionSnapshot:
        now = self.clock.now()
        today = self.clock.today()
        batch = self.store.load_batch()
        original = next((item for item in batch.subscriptions if item.id == subscription_id), None)
        if original is None:
            raise SubscriptionNotFoundError(subscription_id)
        self.ledger.load(batch.price_changes)

        subscription = original.model_copy(deep=True)
        self._transition(subscription, target, now, today)
        try:
            outcome = self._process_one(subscription, batch, now, today, force_reconcile=True)
            result = BatchResult(
                run_id=f"command-{uuid.uuid4().hex}",
                subscriptions=[outcome.subscription],
                price_changes=self.ledger.pending_changes(subscription_id),
                diffs=[outcome.diff] if outcome.diff is not None and not outcome.diff.is_empty else [],
            )
            if self.store.save_batch(result):
                raise StaleSubscriptionError(subscription_id)
        except Exception:
            self.ledger.rollback(subscription_id)
            raise
        self.ledger.commit()
        self.dispatcher.dispatch(result.diffs)
        logger.info(
            "subscription.lifecycle_changed",
            extra={"subscription_id": str(subscription_id), "status": target},
        )
        return outcome.subscription

    def _drop_stale(
        self,
        stale: set[uuid.UUID],
        outcomes: list[_SubscriptionOutcome],
        result: BatchResult,
        report: ProcessingReport,
    ) -> list[_SubscriptionOutcome]:
        """Forget work on subscriptions written elsewhere mid-run; the next run picks them up again."""
        for subscription_id in stale:
            self.ledger.rollback(subscription_id)
        result.price_changes = [change for change in result.price_changes if change.subscription_id not in stale]
        result.diffs = [diff for diff in result.diffs if diff.subscription_id not in stale]
        report.stale_subscription_ids.extend(sorted(stale, key=str))
        logger.warning("renewal.stale_skipped", extra={"processed": len(stale)})
        return [outcome for outcome in outcomes if outcome.subscription.id not in stale]

    @staticmethod
    def _transition(subscription: SubscriptionSnapshot, target: LifecycleState, now: datetime, today: date) -> None:
        current = lifecycle_state(subscription)
        if target not in VALID_LIFECYCLE_TRANSITIONS.get(current, set()) or current == target:
            raise InvalidTransitionError(current, target)

        if target == "PAUSED":
            subscription.is_active = False
        elif target == "ACTIVE":
            subscription.is_active = True
            if subscription.next_billing_date < today:
                subscription.next_billing_date = next_billing_date(today, subscription.billing_cycle)
        elif target == "CANCELLED":
            subscription.is_active = False
            subscription.auto_renew = False
            subscription.cancellation_date = now

    def _process_batch(
        self,
        batch: SubscriptionBatch,
        now: datetime,
        today: date,
        stop_requested: Callable[[], bool] | None,
        report: ProcessingReport,
    ) -> list[_SubscriptionOutcome]:
        workers = self.max_workers if self.max_workers is not None else self.settings.renewal_batch_max_workers

        def guarded(subscription: SubscriptionSnapshot) -> _SubscriptionOutcome | None | bool:
            if stop_requested is not None and stop_requested():
                return False
            return self._process_guarded(subscription, batch, now, today)

        if workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="renewal") as executor:
                futures = [
                    executor.submit(contextvars.copy_context().run, guarded, subscription)
                    for subscription in batch.subscriptions
                ]
                results = [future.result() for future in futures]
        else:
            results = []
            for subscription in batch.subscriptions:
                result = guarded(subscription)
                results.append(result)
                if result is False:
                    break

        outcomes: list[_SubscriptionOutcome] = []
        for subscription, result in zip(batch.subscriptions, results):
            if result is False:
                report.stopped_early = True
            elif result is None:
                report.failed_subscription_ids.append(subscription.id)
            else:
                outcomes.append(result)
        if len(results) < len(batch.subscriptions):
            report.stopped_early = True
        return outcomes

    def _process_guarded(
        self,
        subscription: SubscriptionSnapshot,
        batch: SubscriptionBatch,
        now: datetime,
        today: date,
    ) -> _SubscriptionOutcome | None:
        with tracer.start_as_current_span("renewal.subscription") as span:
            span.set_attribute("subscription_id", str(subscription.id))
            span.set_attribute("billing_cycle", subscription.billing_cycle)
            try:
                outcome = self._process_one(subscription.model_copy(deep=True), batch, now, today)
            except Exception as exc:
                self.ledger.rollback(subscription.id)
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_subscription_failure(type(exc).__name__)
                logger.exception(
                    "renewal.subscription_failed",
                    extra={"subscription_id": str(subscription.id), "error": str(exc)[:500]},
                )
                return None
            span.set_attribute("cycles_applied", outcome.cycles_applied)
            return outcome

    def _process_one(
        self,
        subscription: SubscriptionSnapshot,
        batch: SubscriptionBatch,
        now: datetime,
        today: date,
        *,
        force_reconcile: bool = False,
    ) -> _SubscriptionOutcome:
        outcome = _SubscriptionOutcome(subscription=subscription)
        had_expired_snooze = any(
            item.status == "SNOOZED" and not item.is_snoozed_at(now) for item in batch.reminders.get(subscription.id, [])
        )

        outcome.cycles_applied = self._catch_up(subscription, today)

        if isinstance(subscription.trial, Trialing):
            price_before = subscription.price
            outcome.trial_outcome = apply_trial_outcome(subscription, now=now, today=today)
            if outcome.trial_outcome == "CONVERTED":
                change = self.ledger.record_if_changed(
                    subscription,
                    price_before,
                    subscription.price,
                    detected_automatically=True,
                    reason=TRIAL_CONVERSION_REASON,
                    changed_at=now,
                )
                outcome.price_changes += int(change is not None)
            if outcome.trial_outcome is not None:
                logger.info(
                    "trial.resolved",
                    extra={"subscription_id": str(subscription.id), "outcome": outcome.trial_outcome},
                )

        for edit in batch.edits_for(subscription.id):
            change = self.ledger.record_if_changed(
                subscription,
                edit.old_price,
                edit.new_price,
                detected_automatically=edit.detected_automatically,
                reason=edit.reason,
                changed_at=now,
            )
            outcome.price_changes += int(change is not None)

        touched = bool(outcome.cycles_applied or outcome.trial_outcome or outcome.price_changes)
        if (
            force_reconcile
            or touched
            or subscription.id in batch.reminder_config_changed
            or subscription.is_free_trial
            or had_expired_snooze
        ):
            outcome.diff = self.reminder_engine.reconcile(
                subscription,
                batch.reminders.get(subscription.id, []),
                now,
                batch.preferences,
                latest_price_change=self.ledger.latest(subscription.id),
            )
        return outcome

    @staticmethod
    def _catch_up(subscription: SubscriptionSnapshot, today: date) -> int:
        if (
            not subscription.is_active
            or not subscription.auto_renew
            or subscription.billing_cycle == "LIFETIME"
            or subscription.is_free_trial
        ):
            return 0
        cycles = 0
        while subscription.next_billing_date <= today:
            subscription.last_billing_date = subscription.next_billing_date
            subscription.total_spent = subscription.total_spent + subscription.price
            subscription.next_billing_date = next_billing_date(subscription.next_billing_date, subscription.billing_cycle)
            cycles += 1
        return cycles

    @staticmethod
    def _summarize(report: ProcessingReport, outcomes: list[_SubscriptionOutcome], result: BatchResult) -> None:
        report.processed = len(outcomes)
        for outcome in outcomes:
            if outcome.cycles_applied:
                report.renewed += 1
                report.cycles_applied += outcome.cycles_applied
                observe_cycles_applied(outcome.subscription.billing_cycle, outcome.cycles_applied)
            if outcome.trial_outcome is not None:
                observe_trial_outcome(outcome.trial_outcome)
                if outcome.trial_outcome == "CONVERTED":
                    report.trials_converted += 1
                else:
                    report.trials_lapsed += 1
        report.price_changes_recorded = len(result.price_changes)
        for diff in result.diffs:
            report.reminders_created += len(diff.to_create)
            report.reminders_updated += len(diff.to_update)
            report.reminders_cancelled += len(diff.to_cancel)
            for action, reminders in (("create", diff.to_create), ("update", diff.to_update), ("cancel", diff.to_cancel)):
                for reminder in reminders:
                    observe_reminder_instructions(action, reminder.type)
