"""
Structured logging for the sandbox.

Every log line is a single JSON object written to stdout so the platform's
log drain can index it. Events use dotted names (``sync.restore_complete``)
and carry arbitrary keyword fields:

    log = get_logger("supervisor", service="sandbox")
    log.info("gateway.ready", duration_ms=1234)
    log.error("gateway.spawn_error", exc=e)
"""

import json
import logging
import os
import sys
import time
from typing import Any

ROOT_LOGGER_NAME = "moltbox"

_configured = False


class JsonFormatter(logging.Formatter):
    """Render a record (and its structured fields) as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
            + f".{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        payload.update(getattr(record, "fields", {}))
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None) -> None:
    """Install the JSON handler on the package logger. Safe to call repeatedly."""
    global _configured

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel((level or os.environ.get("LOG_LEVEL", "INFO")).upper())

    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    _configured = True


class StructuredLogger:
    """Thin wrapper binding context fields to every event it emits."""

    def __init__(self, name: str, **context: Any):
        self.name = name
        self.context = context
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")

    def bind(self, **context: Any) -> "StructuredLogger":
        return StructuredLogger(self.name, **{**self.context, **context})

    def _emit(self, level: int, event: str, exc: BaseException | None, fields: dict) -> None:
        if not self._logger.isEnabledFor(level):
            return
        merged = {**self.context, **fields}
        if exc is not None:
            merged["error_type"] = type(exc).__name__
            merged["error"] = str(exc)
        self._logger.log(level, event, extra={"fields": merged})

    def debug(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.DEBUG, event, exc, fields)

    def info(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.INFO, event, exc, fields)

    def warn(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.WARNING, event, exc, fields)

    warning = warn

    def error(self, event: str, exc: BaseException | None = None, **fields: Any) -> None:
        self._emit(logging.ERROR, event, exc, fields)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    return StructuredLogger(name, **context)
