from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from dealflow.context import current_context


# Only these ``extra=`` keys are emitted; anything else passed to a logger is dropped.
LOG_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "actor_user_id",
        "action",
        "resource",
        "operation",
        "stage_id",
        "deal_id",
        "from_stage_id",
        "to_stage_id",
        "order_index",
        "stage_count",
        "orphaned_deal_count",
        "event_name",
        "environment",
        "error_code",
        "error",
    }
)
_MAX_ERROR_LENGTH = 500


_base_record_factory = logging.getLogRecordFactory()


def _record_with_correlation_id(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_record_factory(*args, **kwargs)
    context = current_context()
    record.correlation_id = context.correlation_id if context is not None else None
    return record


class ActorFilter(logging.Filter):
    """Fills in the acting user for records that did not pass one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = current_context()
        if getattr(record, "actor_user_id", None) is None and context is not None:
            record.actor_user_id = context.actor_user_id
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in vars(record).items() if key in LOG_FIELDS and value is not None}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:_MAX_ERROR_LENGTH]
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


def configure_logging() -> None:
    """Route every logger through one JSON stdout handler. Safe to call more than once."""
    root = logging.getLogger()
    if any(isinstance(handler.formatter, JsonLogFormatter) for handler in root.handlers):
        return

    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(ActorFilter())

    logging.setLogRecordFactory(_record_with_correlation_id)
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
