from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from subtrack import events
from subtrack.core.clock import FixedClock
from subtrack.core.config import get_settings
from subtrack.lifecycle.api import get_clock, get_store
from subtrack.lifecycle.repository import InMemorySubscriptionStore
from subtrack.lifecycle.schemas import SubscriptionSnapshot
from subtrack.logging import JsonLogFormatter
from subtrack.main import app


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture()
def client(store: InMemorySubscriptionStore) -> Generator[TestClient, None, None]:
    clock = FixedClock(datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc))
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/subscriptions/{uuid.uuid4()}/insights", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"

    records = [
        record for record in caplog.records if record.name == "subtrack.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/subscriptions/{id}/insights"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_generated_correlation_id_returned_in_header(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.headers.get("x-correlation-id")


def test_renewal_logs_carry_run_and_correlation_ids(
    client: TestClient,
    store: InMemorySubscriptionStore,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    store.add(
        SubscriptionSnapshot(
            name="Video Plus",
            price=Decimal("15.99"),
            billing_cycle="MONTHLY",
            next_billing_date=date(2025, 1, 5),
        )
    )

    response = client.post("/renewals/run", headers={"X-Correlation-Id": "run-corr-1"})
    assert response.status_code == 200
    run_id = response.json()["run_id"]

    finished = [
        record
        for record in caplog.records
        if record.name == "subtrack.lifecycle.service" and record.getMessage() == "renewal.run.finished"
    ]
    assert finished
    assert getattr(finished[-1], "run_id", None) == run_id
    assert getattr(finished[-1], "correlation_id", None) == "run-corr-1"
    assert getattr(finished[-1], "status", None) == "succeeded"

    scheduled = [item for item in events.published_events if item.get("event_type") == "reminder.scheduled"]
    assert scheduled
    assert scheduled[-1]["correlation_id"] == "run-corr-1"
    assert scheduled[-1]["meta"]["run_id"] == run_id


def test_json_formatter_emits_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "subtrack.lifecycle.service",
            "levelname": "INFO",
            "msg": "renewal.subscription_failed",
            "subscription_id": "sub-1",
            "error": "x" * 900,
            "password": "hunter2",
        }
    )

    formatted = JsonLogFormatter().format(record)

    assert '"subscription_id": "sub-1"' in formatted
    assert "hunter2" not in formatted
    assert "x" * 501 not in formatted
