from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from typing import Any

from pythonjsonlogger.json import JsonFormatter as BaseJsonFormatter

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class JsonFormatter(BaseJsonFormatter):
    """JSON lines with an ISO-8601 `ts` and a `level` field."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            ts = datetime.fromtimestamp(record.created, tz=UTC)
            log_record["ts"] = ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname


def setup_logging(level: str = "INFO", fmt: str = "text") -> logging.Logger:
    """
    Configure the root logger for the service.

    - fmt="json": one JSON object per line (python-json-logger)
    - anything else: plain text
    Uvicorn's loggers are routed through the same handler.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "json":
        handler.setFormatter(JsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(handler)
        uvicorn_logger.propagate = False

    return root
