from __future__ import annotations

import logging
import re
import sys
from typing import Any, TextIO


STRUCTURED_FIELDS: tuple[tuple[str, Any], ...] = (
    ("request_id", ""),
    ("drone", ""),
    ("component", ""),
    ("operation", ""),
    ("result", ""),
    ("duration_ms", 0),
    ("error_class", ""),
)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: " + " ".join(
    f"{name}=%({name})s" for name, _default in STRUCTURED_FIELDS
) + " %(message)s"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")

_SECRET_KEYS = ("authorization", "token", "api_key", "password")
_SECRET_PATTERN = re.compile(
    r"(?i)(" + "|".join(_SECRET_KEYS) + r")([=:]\s*)(bearer\s+)?([^\s,;]+)"
)


def redact_secrets(message: str) -> str:
    """Mask values that follow ``token=``, ``Authorization: Bearer`` and similar keys."""
    lowered = message.lower()
    if not any(key in lowered for key in _SECRET_KEYS):
        return message
    return _SECRET_PATTERN.sub(r"\1\2[redacted]", message)


class StructuredLogDefaultsFilter(logging.Filter):
    """Gives every record the structured fields the hub formatter expects."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, default in STRUCTURED_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, default)
        try:
            message = record.getMessage()
        except Exception:
            # Leave malformed records to the handler's own error reporting.
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def normalize_log_level(value: Any) -> str:
    normalized = str(value or "info").strip().lower()
    if normalized == "warn":
        return "warning"
    return normalized if normalized in LOG_LEVELS else "info"


def configure_structured_logger(logger: logging.Logger, *, level: str, stream: TextIO | None = None) -> None:
    handler = logging.StreamHandler(stream or sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(normalize_log_level(level).upper())
    logger.propagate = False


__all__ = [
    "LOG_FORMAT",
    "STRUCTURED_FIELDS",
    "StructuredLogDefaultsFilter",
    "configure_structured_logger",
    "normalize_log_level",
    "redact_secrets",
]
