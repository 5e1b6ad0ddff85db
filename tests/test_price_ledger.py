from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from subtrack import events
from subtrack.core.config import get_settings
from subtrack.lifecycle.ledger import PriceHistoryLedger
from subtrack.lifecycle.schemas import TRIAL_CONVERSION_REASON, PriceChange, SubscriptionSnapshot


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


def _subscription(price: str = "10.00") -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        name="Music Plus",
        price=Decimal(price),
        billing_cycle="MONTHLY",
        next_billing_date=date(2025, 4, 1),
    )


def _price_events() -> list[dict]:
    return [item for item in events.published_events if item.get("event_type") == "subscription.price_increased"]


def test_unchanged_price_records_nothing() -> None:
    ledger = PriceHistoryLedger()
    subscription = _subscription()

    assert ledger.record_if_changed(subscription, Decimal("10"), Decimal("10.000"), detected_automatically=False) is None
    assert ledger.history(subscription.id) == []
    assert subscription.last_price_change is None


def test_increase_is_recorded_and_published_on_commit() -> None:
    ledger = PriceHistoryLedger()
    subscription = _subscription()

    change = ledger.record_if_changed(
        subscription,
        Decimal("10"),
        Decimal("12"),
        detected_automatically=True,
        reason="list price update",
        changed_at=NOW,
    )

    assert change is not None
    assert change.is_increase is True
    assert change.change_amount == Decimal("2.00")
    assert change.formatted_change_percentage == "+20.0%"
    assert subscription.last_price_change == NOW
    assert _price_events() == []

    committed = ledger.commit()

    assert [row.id for row in committed] == [change.id]
    assert ledger.pending_changes() == []
    published = _price_events()
    assert len(published) == 1
    assert published[0]["subscription_id"] == str(subscription.id)
    assert published[0]["old_price"] == "10.00"
    assert published[0]["new_price"] == "12.00"
    assert published[0]["change_percentage"] == "+20.0%"
    assert published[0]["detected_automatically"] is True


def test_decrease_and_trial_conversion_do_not_publish_increase() -> None:
    ledger = PriceHistoryLedger()
    subscription = _subscription()

    decrease = ledger.record_if_changed(subscription, Decimal("12"), Decimal("9"), detected_automatically=False, changed_at=NOW)
    conversion = ledger.record_if_changed(
        subscription,
        Decimal("0"),
        Decimal("9"),
        detected_automatically=True,
        reason=TRIAL_CONVERSION_REASON,
        changed_at=NOW + timedelta(seconds=1),
    )
    ledger.commit()

    assert decrease is not None and decrease.formatted_change_percentage == "-25.0%"
    assert conversion is not None and conversion.change_percentage == Decimal("0")
    assert _price_events() == []
    assert len(ledger.history(subscription.id)) == 2


def test_rollback_discards_only_that_subscriptions_pending_rows() -> None:
    ledger = PriceHistoryLedger()
    failing = _subscription()
    healthy = _subscription()

    ledger.record_if_changed(failing, Decimal("10"), Decimal("11"), detected_automatically=False, changed_at=NOW)
    ledger.record_if_changed(healthy, Decimal("10"), Decimal("13"), detected_automatically=False, changed_at=NOW)

    assert ledger.rollback(failing.id) == 1
    assert ledger.rollback(failing.id) == 0
    assert ledger.history(failing.id) == []
    assert [row.subscription_id for row in ledger.pending_changes()] == [healthy.id]

    ledger.commit()
    assert [item["subscription_id"] for item in _price_events()] == [str(healthy.id)]


def test_load_is_idempotent_and_orders_history() -> None:
    ledger = PriceHistoryLedger()
    subscription = _subscription()
    older = PriceChange(
        subscription_id=subscription.id,
        old_price=Decimal("8"),
        new_price=Decimal("9"),
        change_date=NOW - timedelta(days=40),
    )
    newer = PriceChange(
        subscription_id=subscription.id,
        old_price=Decimal("9"),
        new_price=Decimal("10"),
        change_date=NOW - timedelta(days=2),
    )

    ledger.load([newer, older])
    ledger.load([newer])

    assert [row.id for row in ledger.history(subscription.id)] == [older.id, newer.id]
    assert ledger.latest(subscription.id) == newer
    assert ledger.pending_changes() == []
    assert [row.id for row in ledger.recent_increases(NOW - timedelta(days=7))] == [newer.id]


def test_replay_repairs_cached_last_price_change() -> None:
    ledger = PriceHistoryLedger()
    subscription = _subscription()
    change = PriceChange(
        subscription_id=subscription.id,
        old_price=Decimal("9"),
        new_price=Decimal("10"),
        change_date=NOW,
    )
    ledger.load([change])

    assert ledger.replay_last_price_change(subscription) is True
    assert subscription.last_price_change == NOW
    assert ledger.replay_last_price_change(subscription) is False
