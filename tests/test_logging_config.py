import io
import json
import logging
from decimal import Decimal

import pytest

from portfolio_ledger.logging_config import (
    DEFAULT_ENV,
    JsonFormatter,
    TextFormatter,
    configure_logging,
    structured_log_extra,
)


def _build_logger(stream: io.StringIO, formatter: logging.Formatter | None = None) -> logging.Logger:
    logger = logging.getLogger("portfolio_ledger.test.logging")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter or JsonFormatter())
    logger.handlers = [handler]
    return logger


def test_structured_log_extra_adds_common_identifiers():
    extra = structured_log_extra(
        event="balance_updated",
        user_id="user-1",
        asset="BTC",
        transaction_id="tx-1",
        custom_field="value",
    )

    assert extra["event"] == "balance_updated"
    assert extra["user_id"] == "user-1"
    assert extra["asset"] == "BTC"
    assert extra["transaction_id"] == "tx-1"
    assert extra["custom_field"] == "value"

    minimal_extra = structured_log_extra()
    assert minimal_extra == {"event": None}
    assert "user_id" not in minimal_extra
    assert "asset" not in minimal_extra
    assert "transaction_id" not in minimal_extra


def test_json_formatter_preserves_extra_fields():
    stream = io.StringIO()
    logger = _build_logger(stream)

    logger.info(
        "log message",
        extra=structured_log_extra(
            event="balance_updated",
            user_id="user-1",
            asset="BTC",
            total=Decimal("1.5"),
        ),
    )

    payload = json.loads(stream.getvalue())

    assert payload["event"] == "balance_updated"
    assert payload["user_id"] == "user-1"
    assert payload["asset"] == "BTC"
    assert payload["total"] == "1.5"
    assert payload["env"] == DEFAULT_ENV
    assert payload["message"] == "log message"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "portfolio_ledger.test.logging"


def test_json_formatter_includes_exception_text():
    stream = io.StringIO()
    logger = _build_logger(stream)

    try:
        raise RuntimeError("boom")
    except RuntimeError:
        logger.exception("failed", extra={"event": "ledger_migration_failed"})

    payload = json.loads(stream.getvalue())

    assert payload["event"] == "ledger_migration_failed"
    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_replaces_root_handlers():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging(level="DEBUG", env="staging")

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        formatter = root.handlers[0].formatter
        assert isinstance(formatter, JsonFormatter)
        assert formatter.env == "staging"
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)


def test_json_formatter_always_emits_ledger_identifiers():
    stream = io.StringIO()
    logger = _build_logger(stream)

    logger.warning("plain message")

    payload = json.loads(stream.getvalue())
    assert payload["event"] is None
    assert payload["user_id"] is None
    assert payload["asset"] is None
    assert payload["transaction_id"] is None


def test_text_formatter_renders_event_and_fields():
    stream = io.StringIO()
    logger = _build_logger(stream, TextFormatter())

    logger.warning(
        "Outflow exceeds queued cost basis lots by %s", Decimal("1"),
        extra=structured_log_extra(event="cost_basis_unmatched_outflow", user_id="user-1", asset="BTC"),
    )

    line = stream.getvalue().strip()
    assert line.startswith("WARNING portfolio_ledger.test.logging: Outflow exceeds queued cost basis lots by 1")
    assert "[cost_basis_unmatched_outflow]" in line
    assert "user_id=user-1" in line
    assert "asset=BTC" in line


def test_configure_logging_selects_text_format_and_rejects_unknown():
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        configure_logging(fmt="text")
        assert isinstance(root.handlers[0].formatter, TextFormatter)

        with pytest.raises(ValueError):
            configure_logging(fmt="xml")
    finally:
        root.handlers = saved_handlers
        root.setLevel(saved_level)
