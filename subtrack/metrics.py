from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

renewal_runs_total = Counter(
    "renewal_runs_total",
    "Total renewal processing runs by final status",
    ["status"],
)

renewal_run_duration_seconds = Histogram(
    "renewal_run_duration_seconds",
    "Renewal processing run duration in seconds",
)

renewal_cycles_applied_total = Counter(
    "renewal_cycles_applied_total",
    "Total billing cycles applied by billing cycle",
    ["billing_cycle"],
)

renewal_subscription_failures_total = Counter(
    "renewal_subscription_failures_total",
    "Total subscriptions skipped during a run by error type",
    ["error_type"],
)

trial_outcomes_total = Counter(
    "trial_outcomes_total",
    "Total trial terminal transitions by outcome",
    ["outcome"],
)

price_changes_recorded_total = Counter(
    "price_changes_recorded_total",
    "Total price changes appended to the ledger by direction",
    ["direction"],
)

reminder_instructions_total = Counter(
    "reminder_instructions_total",
    "Total reminder diff instructions by action and reminder type",
    ["action", "reminder_type"],
)

reminder_conflicts_total = Counter(
    "reminder_conflicts_total",
    "Total reconciliation conflicts reported by dispatchers",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    return _UUID_RE.sub("{id}", path)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        route_path = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _PATH_PARAM_RE.sub("{id}", route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_renewal_run(status: str, duration: float) -> None:
    renewal_runs_total.labels(status=status).inc()
    renewal_run_duration_seconds.observe(duration)


def observe_cycles_applied(billing_cycle: str, count: int) -> None:
    if count > 0:
        renewal_cycles_applied_total.labels(billing_cycle=billing_cycle).inc(count)


def observe_subscription_failure(error_type: str) -> None:
    renewal_subscription_failures_total.labels(error_type=error_type).inc()


def observe_trial_outcome(outcome: str) -> None:
    trial_outcomes_total.labels(outcome=outcome).inc()


def observe_price_change(is_increase: bool) -> None:
    price_changes_recorded_total.labels(direction="increase" if is_increase else "decrease").inc()


def observe_reminder_instructions(action: str, reminder_type: str, count: int = 1) -> None:
    if count > 0:
        reminder_instructions_total.labels(action=action, reminder_type=reminder_type).inc(count)


def observe_reminder_conflict() -> None:
    reminder_conflicts_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
