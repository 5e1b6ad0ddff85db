from __future__ import annotations

import logging
import time
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from subtrack.context import bound_correlation_id
from subtrack.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("subtrack.request")

CORRELATION_HEADER = "x-correlation-id"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to the request and records one log line plus metrics per call."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        started = time.perf_counter()
        with bound_correlation_id(correlation_id):
            try:
                response: Response = await call_next(request)
            except Exception:
                self._record(request, 500, started, failed=True)
                raise
            self._record(request, response.status_code, started, failed=False)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response

    @staticmethod
    def _record(
        request: Request,
        status_code: int,
        started: float,
        *,
        failed: bool,
    ) -> None:
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=request.method, path=path, status=status_code, duration=duration_ms / 1000)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        else:
            logger.info("http.request", extra=fields)
