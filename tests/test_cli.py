from __future__ import annotations

import json
import logging
import time

import pytest

from tradeguard import cli
from tradeguard.obs.metrics import LoggingMetricsSink, get_metrics_sink


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def _output(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


def test_show_config_prints_effective_settings(capsys) -> None:
    assert cli.main(["show-config"]) == 0

    payload = _output(capsys)
    assert payload["retry_settings"]["maxRetries"] == 3
    assert payload["circuit_breaker"]["stateFile"] == "./circuit-breaker-state.json"


def test_breaker_status_without_state_file_is_closed(capsys) -> None:
    assert cli.main(["breaker-status"]) == 0

    payload = _output(capsys)
    assert payload["state"] == "closed"
    assert payload["daily_loss"] == "0"


def test_breaker_status_leaves_state_file_untouched(tmp_path, capsys) -> None:
    state_file = tmp_path / "circuit-breaker-state.json"
    original = json.dumps({"daily_loss": "0.4", "last_reset_time": time.time() - 2 * 86400})
    state_file.write_text(original, encoding="utf-8")

    assert cli.main(["breaker-status"]) == 0

    assert _output(capsys)["daily_loss"] == "0"
    assert state_file.read_text(encoding="utf-8") == original


def test_prometheus_exporter_is_not_served_by_cli(monkeypatch, capsys) -> None:
    monkeypatch.setenv("METRICS_EXPORTER", "prometheus")

    assert cli.main(["show-config"]) == 0

    assert _output(capsys)["metrics_exporter"] == "prometheus"
    assert isinstance(get_metrics_sink(), LoggingMetricsSink)


def test_breaker_reset_requires_acknowledgement(tmp_path, capsys) -> None:
    state_file = tmp_path / "circuit-breaker-state.json"
    state_file.write_text(
        json.dumps({"is_open": True, "next_attempt_time": time.time() + 600}), encoding="utf-8"
    )

    assert cli.main(["breaker-reset"]) == 2
    assert "--i-understand" in capsys.readouterr().out
    assert json.loads(state_file.read_text(encoding="utf-8"))["is_open"] is True

    assert cli.main(["breaker-reset", "--i-understand"]) == 0
    payload = _output(capsys)
    assert payload == {"previous_state": "open", "reset": True, "state": "closed"}
    assert json.loads(state_file.read_text(encoding="utf-8"))["is_open"] is False


def test_recovery_info_lists_unfinished_operations(tmp_path, capsys) -> None:
    (tmp_path / "bot-state.json").write_text(
        json.dumps(
            {
                "version": 1,
                "active_operations": [
                    {"operation_id": "op-1", "status": "executing", "amount": "0.2"}
                ],
                "error_counters": {"consecutive_errors": 2},
            }
        ),
        encoding="utf-8",
    )

    assert cli.main(["recovery-info"]) == 0

    payload = _output(capsys)
    assert payload["has_recoverable_state"] is True
    assert payload["consecutive_errors"] == 2
    assert payload["active_operations"][0]["operation_id"] == "op-1"
    assert payload["active_operations"][0]["status"] == "executing"


def test_config_file_is_honoured(tmp_path, capsys) -> None:
    config_path = tmp_path / "guard.json"
    config_path.write_text(
        json.dumps({"circuitBreaker": {"stateFile": str(tmp_path / "custom-breaker.json")}}),
        encoding="utf-8",
    )

    assert cli.main(["--config", str(config_path), "breaker-reset", "--i-understand"]) == 0

    assert (tmp_path / "custom-breaker.json").exists()


def test_invalid_configuration_exits_with_usage_code(tmp_path, capsys) -> None:
    config_path = tmp_path / "guard.json"
    config_path.write_text(json.dumps({"logLevel": "chatty"}), encoding="utf-8")

    assert cli.main(["--config", str(config_path), "show-config"]) == 2
    assert "Invalid configuration" in capsys.readouterr().out


def test_missing_config_file_exits_with_usage_code(tmp_path, capsys) -> None:
    assert cli.main(["--config", str(tmp_path / "missing.json"), "show-config"]) == 2
