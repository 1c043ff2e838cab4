from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from gophercrm.context import get_actor_id, get_correlation_id
from gophercrm.core.config import get_settings


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}

DEFAULT_FIELDS = frozenset(
    {
        # request
        "method",
        "path",
        "status_code",
        "duration_ms",
        # identity and authorization
        "user_id",
        "actor_id",
        "role",
        "resource",
        "operation",
        "outcome",
        "reason",
        "kind",
        "api_key_id",
        # crm records
        "lead_id",
        "customer_id",
        "ticket_id",
        "task_id",
        # configuration
        "config_key",
        "count",
        # lifecycle
        "event_name",
        "error",
    }
)

# Never emitted, even when a caller passes them in ``extra``.
REDACTED_FIELDS = frozenset({"password", "password_hash", "token", "api_key", "key", "authorization"})

MAX_ERROR_LENGTH = 500


def _stamp_correlation_id(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_correlation_id(record)
        # Only set here: the record factory must not claim keys callers pass via extra.
        if getattr(record, "actor_id", None) is None:
            record.actor_id = get_actor_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _stamp_correlation_id(record)
    return record


def structured_fields(record: logging.LogRecord, allowed: Iterable[str] = DEFAULT_FIELDS) -> dict[str, Any]:
    allowed_set = frozenset(allowed) - REDACTED_FIELDS
    fields: dict[str, Any] = {}
    for key, value in record.__dict__.items():
        if key.startswith("_") or key in _BASE_RECORD_KEYS:
            continue
        if key in allowed_set:
            fields[key] = value
    error_value = fields.get("error")
    if isinstance(error_value, str):
        fields["error"] = error_value[:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, correlation_id and whitelisted fields."""

    def __init__(self, allowed_fields: Iterable[str] = DEFAULT_FIELDS) -> None:
        super().__init__()
        self.allowed_fields = frozenset(allowed_fields)

    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record, self.allowed_fields)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


class TextLogFormatter(logging.Formatter):
    """Human-readable variant for local development."""

    def format(self, record: logging.LogRecord) -> str:
        fields = structured_fields(record)
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        line = (
            f"{datetime.fromtimestamp(record.created, tz=timezone.utc):%H:%M:%S} "
            f"{record.levelname:<7} {record.name} {record.getMessage()}"
        )
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            line += f" [{correlation_id}]"
        if rendered:
            line += f" {rendered}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_gophercrm_configured", False):
        return

    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(TextLogFormatter() if settings.log_format == "text" else JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._gophercrm_configured = True  # type: ignore[attr-defined]
