"""Structured JSON logging for the CRM API and the operator CLI.

Every record carries the request correlation id and, once the session is
resolved, the acting user id. Only allow-listed CRM fields reach the output;
anything else passed through `extra` (passwords, lead payloads) is dropped.
"""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, TextIO

from app.context import get_actor_id, get_correlation_id
from app.core.config import get_settings


CRM_LOG_FIELDS = frozenset(
    {
        # request
        "method",
        "path",
        "status_code",
        "duration_ms",
        "retry_after",
        # who and what
        "actor_id",
        "role",
        "target_id",
        "target_type",
        "operation",
        # crm
        "collection",
        "branch_id",
        "cascade_count",
        "error",
    }
)
ERROR_FIELD_MAX_LENGTH = 500


def _stamp_context(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    if not getattr(record, "actor_id", None):
        record.actor_id = get_actor_id()


class CorrelationIdFilter(logging.Filter):
    """Stamps correlation and actor ids on records emitted outside the record factory."""

    def filter(self, record: logging.LogRecord) -> bool:
        _stamp_context(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    # actor_id is left to the filter: `extra` may not overwrite an attribute set here
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def crm_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in CRM_LOG_FIELDS and value is not None
    }
    error = fields.get("error")
    if isinstance(error, str):
        fields["error"] = error[:ERROR_FIELD_MAX_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = crm_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(*, stream: TextIO | None = None) -> None:
    """Install the JSON handler on the root logger once per process.

    The API logs to stdout. The CLI passes stderr so its stdout stays parseable.
    """

    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=stream or sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._crm_configured = True  # type: ignore[attr-defined]
