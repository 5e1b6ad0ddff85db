from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from subtrack.context import get_log_context
from subtrack.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__)
_CONTEXT_KEYS = ("correlation_id", "run_id")
_ERROR_LIMIT = 500

# Structured ``extra`` keys that make it into the JSON line; anything else stays out of the output.
_KNOWN_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "subscription_id",
        "reminder_id",
        "reminder_type",
        "billing_cycle",
        "cycles_applied",
        "outcome",
        "processed",
        "failed",
        "status",
        "error",
    }
)


def _stamp_context(record: logging.LogRecord) -> logging.LogRecord:
    context = get_log_context()
    for key in _CONTEXT_KEYS:
        if not getattr(record, key, None):
            setattr(record, key, context[key])
    return record


class LogContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_context(_default_record_factory(*args, **kwargs))


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_ERROR_LIMIT]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **{key: getattr(record, key, None) for key in _CONTEXT_KEYS},
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_subtrack_configured", False):
        return

    level_name = (level or get_settings().log_level).upper()
    resolved = logging.getLevelName(level_name)
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(resolved)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(LogContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(resolved)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._subtrack_configured = True  # type: ignore[attr-defined]
