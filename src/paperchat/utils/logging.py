"""Logging setup for hosts embedding paperchat.

Records go to ``paperchat.log`` (rotating) and optionally to the console.
Every handler carries a :class:`SecretMaskingFilter` so API keys that end up
in request dumps or exception text never reach the log file.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["SecretMaskingFilter", "coerce_level", "get_log_path", "mask_secrets", "setup_logging"]

LOG_DIR_ENV = "PAPERCHAT_LOG_DIR"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_DEFAULT_LOG_DIR = Path.home() / ".paperchat" / "logs"
_LOG_FILE_NAME = "paperchat.log"
# Transport and SDK loggers that are chatty at DEBUG while streaming.
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(sk-[A-Za-z0-9]{2})[A-Za-z0-9_\-]{8,}"),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]{8,}", re.IGNORECASE),
)
_CONFIGURED = False
_LOG_PATH: Path | None = None


def mask_secrets(text: str) -> str:
    """Replace API-key-looking substrings with a short masked form."""

    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(lambda match: f"{match.group(1)}***", text)
    return text


class SecretMaskingFilter(logging.Filter):
    """Rewrites a record's rendered message with :func:`mask_secrets`."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        masked = mask_secrets(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install paperchat's handlers on the root logger and return the log file path.

    A second call is a no-op unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    numeric_level = coerce_level(level)
    log_path = _resolve_log_dir(log_dir) / _LOG_FILE_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers = [_file_handler(log_path, max_bytes=max_bytes, backup_count=backup_count)]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(SecretMaskingFilter())

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_noisy_loggers(numeric_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    return _LOG_PATH


def coerce_level(level: int | str) -> int:
    """Translate ``"debug"``/``"INFO"``/``20`` style values into a logging level."""

    if isinstance(level, int):
        return level
    candidate = logging.getLevelName(str(level).strip().upper())
    if isinstance(candidate, int):
        return candidate
    return logging.INFO


def _file_handler(path: Path, *, max_bytes: int, backup_count: int) -> logging.Handler:
    return logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()


def _quiet_noisy_loggers(root_level: int) -> None:
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
