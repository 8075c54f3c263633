"""Logging configuration for the ingest gateway."""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

from ingest.core.config import Settings

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName",
        "relativeCreated", "thread", "threadName", "exc_info",
        "exc_text", "stack_info", "taskName",
    }
)


class JsonFormatter(logging.Formatter):
    """Single-line JSON formatter for log shippers.

    Fields passed through ``logger.info(..., extra={...})`` are copied onto
    the entry; exceptions are flattened to a string.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                entry[key] = value

        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))
            entry["exception_type"] = (
                record.exc_info[0].__name__ if record.exc_info[0] else "Unknown"
            )

        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(settings: Settings) -> None:
    """Route application and uvicorn logs to stdout.

    Local runs get a readable text format at DEBUG; every other environment
    gets JSON at INFO.
    """
    log_level = logging.DEBUG if settings.env == "local" else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    if settings.env == "local":
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for logger_name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.setLevel(log_level)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False

    # Outbound webhook requests are logged by the callback orchestrator.
    logging.getLogger("httpx").setLevel(logging.WARNING)
