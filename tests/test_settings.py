"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from paperchat.services.settings import Settings, SettingsStore


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("PAPERCHAT_"):
            monkeypatch.delenv(name, raising=False)


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.persisted_history_limit == 200
    assert settings.max_history_messages == 12


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "settings.json"
    original = Settings(default_model="gpt-5-mini", max_history_messages=4, debug_logging=True)

    SettingsStore(path).save(original)
    reloaded = SettingsStore(path).load()

    assert reloaded == original
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == 1
    assert not path.with_suffix(".tmp").exists()


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"default_model": "m", "theme": "dark"}), encoding="utf-8")

    settings = SettingsStore(path).load()

    assert settings.default_model == "m"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    with caplog.at_level("WARNING"):
        settings = SettingsStore(path).load()

    assert settings == Settings()
    assert "not valid JSON" in caplog.text


def test_runtime_overrides_apply_before_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAPERCHAT_DEFAULT_MODEL", "env-model")

    settings = SettingsStore(tmp_path / "settings.json").load(
        overrides={"default_model": "runtime-model", "max_retries": 7, "bogus": 1, "log_dir": None}
    )

    assert settings.default_model == "env-model"
    assert settings.max_retries == 7
    assert settings.log_dir is None


def test_typed_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PAPERCHAT_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("PAPERCHAT_REQUIRE_MODEL", "0")
    monkeypatch.setenv("PAPERCHAT_MAX_HISTORY_MESSAGES", "6")
    monkeypatch.setenv("PAPERCHAT_REQUEST_TIMEOUT", "12.5")

    settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.debug_logging is True
    assert settings.require_model is False
    assert settings.max_history_messages == 6
    assert settings.request_timeout == 12.5


def test_invalid_numeric_environment_override_is_ignored(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    monkeypatch.setenv("PAPERCHAT_MAX_HISTORY_MESSAGES", "many")

    with caplog.at_level("WARNING"):
        settings = SettingsStore(tmp_path / "settings.json").load()

    assert settings.max_history_messages == 12
    assert "not a valid integer" in caplog.text


def test_resolved_paths(tmp_path: Path) -> None:
    settings = Settings(data_dir=str(tmp_path))

    assert settings.resolved_database_path() == tmp_path / "chat.sqlite3"
    assert settings.resolved_preferences_path() == tmp_path / "prefs.json"

    explicit = Settings(database_path=str(tmp_path / "db" / "custom.db"))
    assert explicit.resolved_database_path() == tmp_path / "db" / "custom.db"
