"""Namespaced preference storage with encrypted secrets."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping

from cryptography.fernet import Fernet, InvalidToken

LOGGER = logging.getLogger(__name__)

_DEFAULT_DIR = Path.home() / ".paperchat"
_DEFAULT_PREFS_PATH = _DEFAULT_DIR / "prefs.json"
DEFAULT_NAMESPACE = "extensions.paperchat"
_SECRET_PREFIX = "fernet:"


class SecretVault:
    """Encrypts and decrypts secrets with a locally stored Fernet key."""

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_DEFAULT_DIR / "prefs.key")
        self._fernet: Fernet | None = None

    @property
    def key_path(self) -> Path:
        return self._key_path

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{_SECRET_PREFIX}{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        if not token.startswith(_SECRET_PREFIX):
            # Plaintext written by hand or by an older build.
            return token
        payload = token[len(_SECRET_PREFIX):]
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class PreferenceStore:
    """Synchronous key/value preferences persisted as one JSON document.

    Keys are stored under ``"{namespace}.{key}"`` so several add-ons can share
    the file. Every write rewrites the file atomically.
    """

    def __init__(
        self,
        path: Path | None = None,
        *,
        namespace: str = DEFAULT_NAMESPACE,
        vault: SecretVault | None = None,
    ) -> None:
        self._path = path or _DEFAULT_PREFS_PATH
        self._namespace = namespace.rstrip(".")
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))
        self._values: Dict[str, Any] = self._read_payload()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def namespace(self) -> str:
        return self._namespace

    def key(self, name: str) -> str:
        return f"{self._namespace}.{name}"

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(self.key(name), default)

    def get_string(self, name: str, default: str = "") -> str:
        value = self.get(name)
        if value is None:
            return default
        return str(value)

    def get_json(self, name: str, default: Any = None) -> Any:
        """Return a structured preference; JSON strings are decoded on read."""

        value = self.get(name)
        if value is None:
            return default
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                LOGGER.warning("Preference %s is not valid JSON", self.key(name))
                return default
        return value

    def set(self, name: str, value: Any) -> None:
        self._values[self.key(name)] = value
        self._write_payload()

    def update(self, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            self._values[self.key(name)] = value
        self._write_payload()

    def delete(self, name: str) -> None:
        if self._values.pop(self.key(name), None) is not None:
            self._write_payload()

    def get_secret(self, name: str) -> str:
        token = self.get(name)
        if not token:
            return ""
        try:
            return self._vault.decrypt(str(token))
        except ValueError:
            LOGGER.warning("Stored secret %s could not be decrypted", self.key(name))
            return ""

    def set_secret(self, name: str, secret: str) -> None:
        self.set(name, self._vault.encrypt(secret) if secret else "")

    def reload(self) -> None:
        self._values = self._read_payload()

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Preferences file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Preferences file %s does not contain an object", self._path)
            return {}
        return payload

    def _write_payload(self) -> None:
        body = json.dumps(self._values, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)


def redact_secret(value: str | None) -> str:
    if not value:
        return ""
    if len(value) <= 8:
        return "***"
    return f"{value[:4]}…{value[-2:]}"


__all__ = ["DEFAULT_NAMESPACE", "PreferenceStore", "SecretVault", "redact_secret"]
