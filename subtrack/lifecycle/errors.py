from __future__ import annotations

import uuid

from pydantic import ValidationError


class LifecycleError(Exception):
    """Base error for subscription lifecycle and reminder reconciliation failures."""


class SubscriptionNotFoundError(LifecycleError):
    def __init__(self, subscription_id: uuid.UUID) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"subscription {subscription_id} not found")


class InvalidSubscriptionError(LifecycleError):
    """Raised at the persistence boundary when a stored row violates snapshot invariants."""

    def __init__(self, subscription_id: object, errors: list[str]) -> None:
        self.subscription_id = subscription_id
        self.errors = errors
        super().__init__(f"invalid subscription {subscription_id}: {'; '.join(errors)}")

    @classmethod
    def from_validation_error(cls, subscription_id: object, exc: ValidationError) -> InvalidSubscriptionError:
        errors = [f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return cls(subscription_id, errors)


class InvalidTransitionError(LifecycleError):
    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"invalid subscription transition {current} -> {target}")


class StaleSubscriptionError(LifecycleError):
    def __init__(self, subscription_id: uuid.UUID) -> None:
        self.subscription_id = subscription_id
        super().__init__(f"subscription {subscription_id} changed while it was being processed")


class ReconciliationConflict(LifecycleError):
    """A dispatcher saw an instruction that races a delivery it already made."""

    def __init__(self, reminder_id: str, status: str, action: str) -> None:
        self.reminder_id = reminder_id
        self.status = status
        self.action = action
        super().__init__(f"cannot {action} reminder {reminder_id} in status {status}")
