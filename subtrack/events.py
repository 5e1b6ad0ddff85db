"""In-process event bus for lifecycle signals.

Envelopes are flat dicts: ``event_type`` plus the payload keys, stamped with the
current correlation id and, inside a renewal run, ``meta.run_id``.
"""

from __future__ import annotations

import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from subtrack.context import get_correlation_id, get_run_id


SYSTEM_STARTED = "system.started"
PRICE_INCREASED = "subscription.price_increased"
REMINDER_SCHEDULED = "reminder.scheduled"
REMINDER_RESCHEDULED = "reminder.rescheduled"
REMINDER_CANCELLED = "reminder.cancelled"
REMINDER_EVENT_TYPES: tuple[str, ...] = (REMINDER_SCHEDULED, REMINDER_RESCHEDULED, REMINDER_CANCELLED)


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def handlers(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self.handlers(event_name):
            handler(event)


event_bus = InProcessEventBus()

# Every envelope published in this process; tests read and clear it.
published_events: list[dict[str, Any]] = []


def publish(event_type: str, payload: dict[str, Any]) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "correlation_id": get_correlation_id(),
        **payload,
    }
    run_id = get_run_id()
    if run_id is not None:
        envelope["meta"] = {**envelope.get("meta", {}), "run_id": run_id}

    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
