from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
run_id_var: ContextVar[str | None] = ContextVar("run_id", default=None)


@contextmanager
def bound_correlation_id(value: str | None) -> Iterator[str | None]:
    """Bind the request (or task) correlation id for the duration of the block."""
    token = correlation_id_var.set(value)
    try:
        yield value
    finally:
        correlation_id_var.reset(token)


@contextmanager
def bound_run_id(value: str) -> Iterator[str]:
    """Bind a renewal run id; log records and event envelopes pick it up from here."""
    token = run_id_var.set(value)
    try:
        yield value
    finally:
        run_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_run_id() -> str | None:
    return run_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "run_id": get_run_id()}
