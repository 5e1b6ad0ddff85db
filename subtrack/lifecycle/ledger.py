from __future__ import annotations

import logging
import threading
import uuid
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from subtrack import events
from subtrack.lifecycle.calendar import quantize_amount
from subtrack.lifecycle.schemas import TRIAL_CONVERSION_REASON, PriceChange, SubscriptionSnapshot, utcnow
from subtrack.metrics import observe_price_change


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PriceHistoryLedger:
    """Append-only price history per subscription.

    Rows recorded during a batch stay pending until ``commit``; ``rollback``
    discards a single subscription's pending rows when its processing fails.
    """

    _rows: dict[uuid.UUID, list[PriceChange]] = field(default_factory=lambda: defaultdict(list))
    _pending: list[PriceChange] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def load(self, rows: Iterable[PriceChange]) -> None:
        with self._lock:
            for row in rows:
                history = self._rows[row.subscription_id]
                if all(existing.id != row.id for existing in history):
                    history.append(row)
                    history.sort(key=lambda item: item.change_date)

    def record_if_changed(
        self,
        subscription: SubscriptionSnapshot,
        old_price: Decimal,
        new_price: Decimal,
        *,
        detected_automatically: bool,
        reason: str | None = None,
        changed_at: datetime | None = None,
    ) -> PriceChange | None:
        old_q = quantize_amount(old_price)
        new_q = quantize_amount(new_price)
        if old_q == new_q:
            return None

        change = PriceChange(
            subscription_id=subscription.id,
            old_price=old_q,
            new_price=new_q,
            change_date=changed_at or utcnow(),
            reason=reason,
            detected_automatically=detected_automatically,
        )
        with self._lock:
            self._rows[subscription.id].append(change)
            self._pending.append(change)
        subscription.last_price_change = change.change_date

        logger.info(
            "price_change.recorded",
            extra={"subscription_id": str(subscription.id), "status": "increase" if change.is_increase else "decrease"},
        )
        return change

    def history(self, subscription_id: uuid.UUID) -> list[PriceChange]:
        with self._lock:
            return list(self._rows.get(subscription_id, []))

    def latest(self, subscription_id: uuid.UUID) -> PriceChange | None:
        rows = self.history(subscription_id)
        return max(rows, key=lambda row: row.change_date) if rows else None

    def recent_increases(self, since: datetime, subscription_id: uuid.UUID | None = None) -> list[PriceChange]:
        with self._lock:
            if subscription_id is not None:
                candidates = list(self._rows.get(subscription_id, []))
            else:
                candidates = [row for rows in self._rows.values() for row in rows]
        increases = [row for row in candidates if row.is_increase and row.change_date >= since]
        return sorted(increases, key=lambda row: row.change_date, reverse=True)

    def replay_last_price_change(self, subscription: SubscriptionSnapshot) -> bool:
        """Recompute the cached ``last_price_change``; returns True when it diverged."""
        latest = self.latest(subscription.id)
        expected = latest.change_date if latest is not None else None
        if subscription.last_price_change == expected:
            return False
        subscription.last_price_change = expected
        return True

    def pending_changes(self, subscription_id: uuid.UUID | None = None) -> list[PriceChange]:
        with self._lock:
            if subscription_id is None:
                return list(self._pending)
            return [row for row in self._pending if row.subscription_id == subscription_id]

    def rollback(self, subscription_id: uuid.UUID) -> int:
        with self._lock:
            discarded = {row.id for row in self._pending if row.subscription_id == subscription_id}
            if not discarded:
                return 0
            self._pending = [row for row in self._pending if row.id not in discarded]
            self._rows[subscription_id] = [row for row in self._rows[subscription_id] if row.id not in discarded]
        logger.warning(
            "price_change.rolled_back",
            extra={"subscription_id": str(subscription_id), "processed": len(discarded)},
        )
        return len(discarded)

    def commit(self) -> list[PriceChange]:
        """Clear the pending rows and publish ``subscription.price_increased`` for increases."""
        with self._lock:
            committed, self._pending = self._pending, []
        for change in committed:
            observe_price_change(change.is_increase)
            if change.is_increase and change.reason != TRIAL_CONVERSION_REASON:
                events.publish(
                    events.PRICE_INCREASED,
                    {
                        "subscription_id": str(change.subscription_id),
                        "price_change_id": str(change.id),
                        "old_price": str(change.old_price),
                        "new_price": str(change.new_price),
                        "change_percentage": change.formatted_change_percentage,
                        "reason": change.reason,
                        "detected_automatically": change.detected_automatically,
                        "changed_at": change.change_date.isoformat(),
                    },
                )
        return committed
