"""Structured logging for the provisioner.

JSON output is one object per line, suitable for a log shipper. Text output
is for humans at a terminal. Fields passed via `extra=` are carried through
in both formats.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from provisioner.config import settings

SERVICE_NAME = "provisioner"

# Attributes every LogRecord has; anything else came in via extra=
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime", "taskName"}


def _record_extras(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class ProvisionerJSONFormatter(logging.Formatter):
    """Render log records as single-line JSON."""

    def __init__(self, service: str = SERVICE_NAME):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service,
        }
        extras = _record_extras(record)
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ProvisionerTextFormatter(logging.Formatter):
    """Human-readable single-line format with key extras appended."""

    SHOWN_EXTRAS = ("resource_id", "operation", "status", "duration_ms")

    def __init__(self):
        super().__init__(fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = _record_extras(record)
        shown = " ".join(
            f"{key}={extras[key]}" for key in self.SHOWN_EXTRAS if key in extras
        )
        return f"{message} [{shown}]" if shown else message


def setup_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure the root logger once at process start."""
    level = (level or settings.log_level).upper()
    log_format = (log_format or settings.log_format).lower()

    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(ProvisionerJSONFormatter())
    else:
        handler.setFormatter(ProvisionerTextFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request at INFO; our client already does
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
