"""
Structured logging for Tower.

Records are emitted as single-line JSON carrying the reconciliation context
they belong to (vm, task, phase, operation). A long operation binds its
context once with :meth:`TowerLogger.bind` and every record it emits
through the returned adapter shares one ``request_id``::

    log = tw_logger.bind(vm_id="vm-1", operation="update")
    log.info("migrating", phase="submit")
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, MutableMapping

_CONTEXT_KEYS = ("request_id", "vm_id", "task_id", "phase", "operation")


class StructuredFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(
            (key, getattr(record, key))
            for key in _CONTEXT_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry)


class OperationLogger(logging.LoggerAdapter):
    """Adapter that stamps the bound context onto every record.

    Context keys passed to a single call (``vm_id=...``, ``phase=...``)
    override the bound values for that record only.
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        for key in _CONTEXT_KEYS:
            value = kwargs.pop(key, None)
            if value is not None:
                extra[key] = value
        extra.update(kwargs.pop("extra", None) or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> OperationLogger:
        """Derive an adapter with additional bound context."""
        merged = dict(self.extra or {})
        merged.update((k, v) for k, v in context.items() if v is not None)
        return OperationLogger(self.logger, merged)


class TowerLogger:
    """Owner of the ``tower`` logger and its JSON handler."""

    def __init__(self, name: str = "tower") -> None:
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def bind(self, request_id: str | None = None, **context: Any) -> OperationLogger:
        """Return an adapter bound to *context* and one correlation id.

        Args:
            request_id: Correlation ID; auto-generated if omitted.
            **context: Any of ``vm_id``, ``task_id``, ``phase``, ``operation``.
        """
        extra = {k: v for k, v in context.items() if v is not None}
        extra["request_id"] = request_id or uuid.uuid4().hex[:12]
        return OperationLogger(self.logger, extra)

    def log_operation(
        self,
        level: int,
        message: str,
        *,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        """Emit one record with its own context and a fresh request id."""
        self.bind(**context).log(level, message, exc_info=exc_info)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.DEBUG, message, **kwargs)


# Module-level singleton
tw_logger = TowerLogger()
