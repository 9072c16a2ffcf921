"""
JSON line logging.

Fields bound with ``log_context`` (workspace, provider, request id) are added
to every line emitted inside the block, including lines from adapters that
know nothing about the tenant they are serving.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

from commhub.config import get_settings

_context: ContextVar[dict[str, Any]] = ContextVar("commhub_log_context", default={})

_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_QUIET_LOGGERS = ("httpx", "httpcore", "python_multipart", "websockets")


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``fields`` to every log line emitted in this block (and its tasks)."""
    token = _context.set({**_context.get(), **fields})
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> dict[str, Any]:
    return dict(_context.get())


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` keys become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        base = set(entry)
        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS:
                continue
            entry[f"extra_{key}" if key in base else key] = value
        for key, value in _context.get().items():
            entry.setdefault(key, value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Module logger; propagates to the root handler installed by ``setup_logging``."""
    logger = logging.getLogger(name)
    if not logging.getLogger().handlers and not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
    return logger


def setup_logging() -> None:
    """Install the JSON handler on the root logger at the configured level."""
    settings = get_settings()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level.upper())

    logging.getLogger("sqlalchemy.engine").setLevel(settings.sqlalchemy_log_level.upper())
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
