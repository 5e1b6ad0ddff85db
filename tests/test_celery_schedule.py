from __future__ import annotations

from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from celery.signals import setup_logging

from subtrack import events
from subtrack.core import celery_app as celery_module
from subtrack.core.config import get_settings
from subtrack.lifecycle.repository import InMemorySubscriptionStore
from subtrack.lifecycle.schemas import SubscriptionSnapshot


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


def test_beat_schedule_runs_renewals_daily() -> None:
    entry = celery_module.celery_app.conf.beat_schedule["renewals-daily"]

    assert entry["task"] == "subtrack.tasks.run_renewals"
    assert entry["schedule"].hour == {get_settings().renewal_run_hour}
    assert entry["schedule"].minute == {0}


def test_run_renewals_task_returns_json_report(monkeypatch: pytest.MonkeyPatch) -> None:
    store = InMemorySubscriptionStore()
    store.add(
        SubscriptionSnapshot(
            name="Cloud Backup",
            price=Decimal("4.99"),
            billing_cycle="MONTHLY",
            next_billing_date=date(2099, 1, 15),
            created_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
        )
    )
    monkeypatch.setattr(celery_module, "SqlAlchemySubscriptionStore", lambda: store)

    report = celery_module.run_renewals_task()

    assert report["processed"] == 1
    assert report["renewed"] == 0
    assert report["failed_subscription_ids"] == []
    assert isinstance(report["run_id"], str)
    assert [event["event_type"] for event in events.published_events] == [events.REMINDER_SCHEDULED]


def test_worker_startup_configures_json_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(celery_module, "configure_logging", lambda: calls.append("configured"))

    setup_logging.send(sender=None, loglevel="INFO", logfile=None, format="", colorize=False)

    assert calls == ["configured"]
