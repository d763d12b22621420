"""
Logging helpers for the storage components.

Modules log through ``logging.getLogger(__name__)`` and never configure
handlers themselves; hosts call ``configure_logging()`` once. Components
that log about a specific unit of work (a drain, a table) wrap their
logger in a ``StorageLoggerAdapter`` so every line carries that context.
Storage errors can be attached to a log line with ``error_fields()``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

from .exceptions import StorageError

PACKAGE_LOGGER = "offline_sync_storage"

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Attributes every LogRecord has; anything else came in through ``extra``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    Fields: ``timestamp`` (UTC ISO 8601 of the record), ``level``,
    ``logger``, ``message``, every ``extra`` field, and for records logged
    with an exception: ``exception`` (formatted traceback) plus
    ``error_details`` when the exception is a StorageError.
    """

    def __init__(self, static_fields: dict[str, Any] | None = None) -> None:
        super().__init__()
        self.static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self.static_fields,
        }

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and not key.startswith("_"):
                entry[key] = _jsonable(value)

        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
            error = record.exc_info[1]
            if isinstance(error, StorageError):
                entry["error_details"] = {k: _jsonable(v) for k, v in error.details.items()}

        return json.dumps(entry, default=str)


def configure_logging(
    level: int = logging.INFO,
    json_format: bool = True,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Attach a single handler to the package logger.

    Calling it again replaces the previous handler.

    Args:
        level: Level for the package logger
        json_format: JSON lines if True, plain text otherwise
        stream: Output stream (default: stdout)

    Returns:
        The ``offline_sync_storage`` logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        StructuredJsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT)
    )
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_storage_logger(component: str) -> logging.Logger:
    """Logger named ``offline_sync_storage.<component>``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{component}")


def error_fields(error: BaseException) -> dict[str, Any]:
    """``extra`` fields describing an error, for structured log lines."""
    fields: dict[str, Any] = {"error_type": type(error).__name__}
    if isinstance(error, StorageError):
        if error.provider:
            fields["error_provider"] = error.provider
        if error.operation:
            fields["error_operation"] = error.operation
    return fields


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Adds fixed context (e.g. ``drain_id``) to every record.

    Per-call ``extra`` fields take precedence over the adapter's context.
    """

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs

    def bind(self, **fields: Any) -> StorageLoggerAdapter:
        """New adapter with additional context fields."""
        return StorageLoggerAdapter(self.logger, {**(self.extra or {}), **fields})
