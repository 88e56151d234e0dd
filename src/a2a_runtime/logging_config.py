"""
Structured logging for the A2A runtime.

Every record is emitted as one JSON object. Fields passed through ``extra=``
become top-level keys, and records logged while a task is being handled
carry that task's id even when the call site does not pass it.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

# Attributes every LogRecord carries; anything else came in through ``extra=``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

current_task_id: ContextVar[Optional[str]] = ContextVar("current_task_id", default=None)


@contextmanager
def task_log_context(task_id: str) -> Iterator[None]:
    """Tag records logged inside the block with ``task_id``."""
    token = current_task_id.set(task_id)
    try:
        yield
    finally:
        current_task_id.reset(token)


class TaskContextFilter(logging.Filter):
    """Fill in ``task_id`` from the running task when a record lacks one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "task_id", None) is None:
            task_id = current_task_id.get()
            if task_id is not None:
                record.task_id = task_id
        return True


class JsonFormatter(logging.Formatter):
    """Format log records as structured JSON."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_") and key not in payload
        }
        for key, value in extras.items():
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                value = repr(value)
            payload[key] = value

        return json.dumps(payload, separators=(",", ":"))


def _json_handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(JsonFormatter())
    handler.addFilter(TaskContextFilter())
    return handler


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route all logging through JSON handlers on the root logger.

    Existing root handlers are replaced so repeated app startups (reloads,
    tests) do not duplicate output. A log file that cannot be opened is
    reported and skipped.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.getLevelName(level.upper()))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(_json_handler(logging.StreamHandler()))

    if log_file:
        try:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            root_logger.addHandler(_json_handler(logging.FileHandler(log_file)))
        except OSError as e:
            root_logger.warning(
                "Could not set up file logging", extra={"log_file": log_file, "error": str(e)}
            )

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
