from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

# Only these record extras reach the JSON output; anything else is dropped.
_KNOWN_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "lead_id",
    "lead_code",
    "actor_user_id",
    "stage_id",
    "from_stage_id",
    "to_stage_id",
    "client_action",
    "client_id",
    "lost_reason_id",
    "activity_id",
    "candidate_count",
    "assigned_user_id",
    "service_type",
    "message_id",
    "template_id",
    "outcome",
    "event_name",
    "error",
)
_MAX_ERROR_LENGTH = 500
_MISSING = object()


def _stamp_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_correlation_id(record)
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp_correlation_id(_default_record_factory(*args, **kwargs))


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {}
        for key in _KNOWN_FIELDS:
            value = getattr(record, key, _MISSING)
            if value is not _MISSING:
                fields[key] = value
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.now(timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipeline_configured", False):
        return

    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._pipeline_configured = True  # type: ignore[attr-defined]
