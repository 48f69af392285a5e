from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings


# Extras allowed into the JSON line; anything else passed via `extra=` is dropped.
_REQUEST_FIELDS = ("method", "path", "status_code", "duration_ms", "user_id")
_ENTITY_FIELDS = ("entity_type", "entity_id", "role", "operation", "reason", "outcome")
_FIELD_ORDER = _REQUEST_FIELDS + _ENTITY_FIELDS + ("error",)
_MAX_ERROR_LENGTH = 500

_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, correlation_id, fields."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = {
            name: getattr(record, name) for name in _FIELD_ORDER if getattr(record, name, None) is not None
        }
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipeline_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    # app.request already emits one line per request.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._pipeline_configured = True  # type: ignore[attr-defined]
