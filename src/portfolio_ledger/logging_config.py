"""Structured logging for the portfolio ledger.

Every ledger log line carries a machine-readable ``event`` label plus the
ledger identifiers it concerns (``user_id``, ``asset``, ``transaction_id``).
Two renderings are available: one JSON object per line for collectors, and
a compact ``key=value`` text form for terminals.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

DEFAULT_ENV = os.getenv("PORTFOLIO_LEDGER_ENV", os.getenv("ENV", "dev"))

LOG_FORMATS = ("json", "text")

# Identifiers always present in JSON output, null when a record lacks them.
LEDGER_FIELDS: Tuple[str, ...] = ("event", "user_id", "asset", "transaction_id")

# Attributes every LogRecord has; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return repr(value)


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRIBUTES}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Values attached through ``extra`` are kept as top-level keys. Decimals are
    written as strings so quantities and prices survive without float
    rounding.
    """

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env or DEFAULT_ENV

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": getattr(record, "env", self.env),
        }
        for field in LEDGER_FIELDS:
            payload[field] = getattr(record, field, None)

        for key, value in _extras(record).items():
            payload.setdefault(key, value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_value)


class TextFormatter(logging.Formatter):
    """``LEVEL logger: message [event] key=value ...`` for interactive use."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        line = f"{record.levelname} {record.name}: {record.getMessage()}"

        extras = _extras(record)
        event = extras.pop("event", None)
        extras.pop("env", None)
        if event:
            line += f" [{event}]"
        for key, value in extras.items():
            if value is not None:
                line += f" {key}={value}"

        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(
    level: int | str = logging.INFO, env: str | None = None, fmt: str = "json"
) -> None:
    """Route the root logger to a single stderr handler in ``fmt``."""

    if fmt not in LOG_FORMATS:
        raise ValueError(f"Unknown log format: {fmt}")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(env=env) if fmt == "json" else TextFormatter())
    root_logger.addHandler(handler)


def structured_log_extra(
    *,
    event: str | None = None,
    user_id: str | None = None,
    asset: str | None = None,
    transaction_id: str | None = None,
    env: Optional[str] = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Build the ``extra`` dict for a ledger log call.

    Identifiers left as ``None`` are omitted so they never overwrite values a
    filter or adapter attached earlier.
    """

    extra: Dict[str, Any] = {"event": event}
    if env is not None:
        extra["env"] = env

    for key, value in (("user_id", user_id), ("asset", asset), ("transaction_id", transaction_id)):
        if value is not None:
            extra[key] = value

    extra.update(kwargs)
    return extra


__all__: list[str] = [
    "DEFAULT_ENV",
    "LEDGER_FIELDS",
    "LOG_FORMATS",
    "JsonFormatter",
    "TextFormatter",
    "configure_logging",
    "structured_log_extra",
]
