from __future__ import annotations

import io
import json
import logging
import sys

import pytest

from tradeguard.logging_context import with_logging_context, with_operation_context
from tradeguard.logging_utils import JsonFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    httpx_level = logging.getLogger("httpx").level
    httpcore_level = logging.getLogger("httpcore").level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("httpx").setLevel(httpx_level)
    logging.getLogger("httpcore").setLevel(httpcore_level)


def _record(message: str, extra: dict | None = None, exc_info=None) -> logging.LogRecord:
    record = logging.LogRecord(
        name="tradeguard.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=exc_info,
    )
    if extra is not None:
        record.extra = extra
    return record


def test_formatter_emits_json_with_extra_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record("trade_executed", {"tx_ref": "sig-1"})))

    assert payload["message"] == "trade_executed"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "tradeguard.test"
    assert payload["tx_ref"] == "sig-1"
    assert payload["operation_id"] is None


def test_formatter_includes_operation_context() -> None:
    with with_logging_context(run_id="run-7"):
        with with_operation_context("op-1", venue="jupiter", token_id="BONK"):
            payload = json.loads(JsonFormatter().format(_record("retry_scheduled")))
        outside = json.loads(JsonFormatter().format(_record("after")))

    assert payload["run_id"] == "run-7"
    assert payload["operation_id"] == "op-1"
    assert payload["venue"] == "jupiter"
    assert payload["token_id"] == "BONK"
    assert outside["operation_id"] is None
    assert outside["run_id"] == "run-7"


def test_explicit_extra_wins_over_context() -> None:
    with with_operation_context("op-1"):
        payload = json.loads(
            JsonFormatter().format(_record("state_operation_added", {"operation_id": "op-2"}))
        )

    assert payload["operation_id"] == "op-2"


def test_formatter_redacts_secrets() -> None:
    payload = json.loads(
        JsonFormatter().format(
            _record(
                "rpc_call",
                {
                    "private_key": "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3",
                    "endpoint": "https://rpc.example/?api-key=abcd1234efgh5678",
                },
            )
        )
    )

    assert "wrPbwdL6" not in payload["private_key"]
    assert "abcd1234efgh5678" not in payload["endpoint"]


def test_formatter_includes_exception_details() -> None:
    try:
        raise RuntimeError("rpc unavailable")
    except RuntimeError:
        record = _record("state_save_failed", exc_info=sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))

    assert payload["error_type"] == "RuntimeError"
    assert payload["error_message"] == "rpc unavailable"
    assert "Traceback" in payload["traceback"]


def test_setup_logging_quiets_http_clients_at_info(monkeypatch, restore_root_logger) -> None:
    monkeypatch.delenv("HTTPX_LOG_LEVEL", raising=False)
    monkeypatch.delenv("HTTPCORE_LOG_LEVEL", raising=False)

    setup_logging("INFO")

    root = logging.getLogger()
    assert root.level == logging.INFO
    assert isinstance(root.handlers[0].formatter, JsonFormatter)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING


def test_setup_logging_honors_http_client_overrides(monkeypatch, restore_root_logger) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "error")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "bogus")

    setup_logging("DEBUG")

    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.DEBUG


def test_unknown_level_falls_back_to_info(restore_root_logger) -> None:
    setup_logging("chatty")

    assert logging.getLogger().level == logging.INFO


def test_setup_logging_writes_json_lines_to_given_stream(restore_root_logger) -> None:
    buffer = io.StringIO()
    setup_logging("INFO", stream=buffer)

    with with_operation_context("op-9", venue="raydium"):
        logging.getLogger("tradeguard.services.state_persistence").info(
            "state_saved", extra={"extra": {"active_operations": 2}}
        )
    logging.getLogger("tradeguard.services.retry").debug("retry_scheduled")

    lines = buffer.getvalue().splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["message"] == "state_saved"
    assert payload["operation_id"] == "op-9"
    assert payload["venue"] == "raydium"
    assert payload["active_operations"] == 2
