"""Process-level settings and their JSON persistence."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..chat.constants import (
    DEFAULT_MODEL,
    DEFAULT_SYSTEM_PROMPT,
    MAX_HISTORY_MESSAGES,
    PERSISTED_HISTORY_LIMIT,
    REFRESH_INTERVAL,
)

__all__ = ["Settings", "SettingsStore"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".paperchat"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "PAPERCHAT_DEFAULT_MODEL": "default_model",
    "PAPERCHAT_SYSTEM_PROMPT": "system_prompt",
    "PAPERCHAT_DATA_DIR": "data_dir",
    "PAPERCHAT_LOG_LEVEL": "log_level",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "PAPERCHAT_DEBUG_LOGGING": "debug_logging",
    "PAPERCHAT_REQUIRE_MODEL": "require_model",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "PAPERCHAT_REQUEST_TIMEOUT": "request_timeout",
    "PAPERCHAT_REFRESH_INTERVAL": "refresh_interval",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "PAPERCHAT_MAX_HISTORY_MESSAGES": "max_history_messages",
    "PAPERCHAT_PERSISTED_HISTORY_LIMIT": "persisted_history_limit",
    "PAPERCHAT_MAX_RETRIES": "max_retries",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """Runtime configuration for a chat session host.

    Endpoint credentials live in the preference store (see
    :mod:`paperchat.services.profiles`); these settings cover storage,
    limits, and logging.
    """

    data_dir: str = str(_SETTINGS_DIR)
    database_path: str | None = None
    preferences_path: str | None = None
    log_dir: str | None = None
    log_level: str = "INFO"
    debug_logging: bool = False
    persisted_history_limit: int = PERSISTED_HISTORY_LIMIT
    max_history_messages: int = MAX_HISTORY_MESSAGES
    refresh_interval: float = REFRESH_INTERVAL
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    default_model: str = DEFAULT_MODEL
    request_timeout: float = 90.0
    max_retries: int = 3
    require_model: bool = False

    def resolved_database_path(self) -> Path:
        if self.database_path:
            return Path(self.database_path).expanduser()
        return Path(self.data_dir).expanduser() / "chat.sqlite3"

    def resolved_preferences_path(self) -> Path:
        if self.preferences_path:
            return Path(self.preferences_path).expanduser()
        return Path(self.data_dir).expanduser() / "prefs.json"


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying runtime then environment overrides."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="runtime")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload: Dict[str, Any] = asdict(settings)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str,
    ) -> Settings:
        allowed = {field.name for field in fields(Settings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {field.name for field in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}
