from __future__ import annotations

import os
from pathlib import Path

import pytest

from tradeguard.config import Settings
from tradeguard.obs.metrics import LoggingMetricsSink, set_metrics_sink


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)
        validation_alias = getattr(field, "validation_alias", None)
        choices = getattr(validation_alias, "choices", ())
        for choice in choices:
            if isinstance(choice, str):
                settings_env_keys.add(choice)

    lowered = {key.lower() for key in settings_env_keys}
    for key in list(os.environ):
        if key in settings_env_keys or key.lower() in lowered:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def run_in_tmp_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # default state files are relative to the working directory
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_metrics_sink():
    yield
    set_metrics_sink(LoggingMetricsSink())


@pytest.fixture
def fake_time():
    now = {"t": 1_700_000_000.0}
    sleeps: list[float] = []

    def _clock() -> float:
        return now["t"]

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["t"] += seconds

    return now, sleeps, _clock, _sleep
