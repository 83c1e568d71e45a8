from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id, get_workflow_fields
from leadflow.core.config import get_settings


_EXPORTED_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "sub_account_id",
    "event_type",
    "lead_id",
    "workflow_id",
    "execution_id",
    "action_type",
    "part",
    "status",
    "error",
)
_MAX_ERROR_LENGTH = 500


def _record_factory_with_correlation(factory: Any) -> Any:
    def build(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = factory(*args, **kwargs)
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return record

    build._leadflow = True  # type: ignore[attr-defined]
    return build


class WorkflowContextFilter(logging.Filter):
    """Fills workflow identifiers the caller did not pass as ``extra``.

    Messaging and lead logs emitted during a workflow run end up tagged
    with the run's workflow, lead and execution ids.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_workflow_fields().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = get_correlation_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: record.__dict__[key] for key in _EXPORTED_FIELDS if key in record.__dict__}
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
    root = logging.getLogger()
    if getattr(root, "_leadflow_configured", False):
        return

    level = logging.getLevelName(get_settings().log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(WorkflowContextFilter())

    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    if not getattr(logging.getLogRecordFactory(), "_leadflow", False):
        logging.setLogRecordFactory(_record_factory_with_correlation(logging.getLogRecordFactory()))
    root._leadflow_configured = True  # type: ignore[attr-defined]
