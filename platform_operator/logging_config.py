"""Structured logging configuration for the operator.

Log records carry the resource key of the reconcile attempt that emitted
them (via a context variable set by the controller), so one resource's
history can be followed across workers and requeues.
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

from platform_operator.config import settings

# Resource key ("Kind/namespace/name") of the attempt running in this task
reconcile_key_var: ContextVar[str | None] = ContextVar("reconcile_key", default=None)

_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def set_reconcile_key(key: str | None):
    """Bind a resource key to the current context. Returns the reset token."""
    return reconcile_key_var.set(key)


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        k: v for k, v in record.__dict__.items()
        if k not in _RESERVED_ATTRS and not k.startswith("_")
    }


class OperatorJSONFormatter(logging.Formatter):
    """One JSON object per line, suitable for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": "platform-operator",
            "message": record.getMessage(),
        }
        key = reconcile_key_var.get()
        if key:
            payload["resource"] = key
        extra = _extra_fields(record)
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class OperatorTextFormatter(logging.Formatter):
    """Human-readable single-line format for local runs."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-7s [%(name)s] %(resource)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        key = reconcile_key_var.get()
        record.resource = f"{key} " if key else ""
        return super().format(record)


def setup_logging() -> None:
    """Configure the root logger from settings (idempotent)."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_platform_operator", False):
            root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler._platform_operator = True
    if settings.log_format.lower() == "text":
        handler.setFormatter(OperatorTextFormatter())
    else:
        handler.setFormatter(OperatorJSONFormatter())

    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
