"""Composition helpers that wire a :class:`ChatSession` from settings."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .ai.backend import GenerationBackend, OpenAIGenerationBackend
from .ai.context import DocumentTextCache, TextLoader
from .chat.events import EventBus
from .chat.session import ChatSession
from .services.message_store import MessageStore, SqliteMessageStore
from .services.preferences import PreferenceStore
from .services.profiles import ProfileRegistry
from .services.settings import Settings, SettingsStore
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)


def configure_logging(settings: Settings | None = None, *, debug: bool = False, force: bool = False) -> Path:
    """Configure logging from *settings*; ``debug`` forces DEBUG level."""

    active = settings or Settings()
    level = logging.DEBUG if debug or active.debug_logging else logging_utils.coerce_level(active.log_level)
    log_path = logging_utils.setup_logging(level, log_dir=active.log_dir, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))
    return log_path


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except Exception as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


def create_session(
    settings: Settings | None = None,
    *,
    preferences: PreferenceStore | None = None,
    store: MessageStore | None = None,
    backend: GenerationBackend | None = None,
    text_loader: TextLoader | None = None,
    events: EventBus | None = None,
) -> ChatSession:
    """Build a session with SQLite history, file preferences and an OpenAI backend."""

    active = settings or Settings()
    prefs = preferences or PreferenceStore(active.resolved_preferences_path())
    message_store = store or SqliteMessageStore(active.resolved_database_path())
    generation = backend or OpenAIGenerationBackend(
        system_prompt=active.system_prompt,
        request_timeout=active.request_timeout,
        max_retries=active.max_retries,
        debug_logging=active.debug_logging,
    )
    _LOGGER.debug("Creating chat session (history limit=%s)", active.persisted_history_limit)
    return ChatSession(
        backend=generation,
        store=message_store,
        settings=active,
        profiles=ProfileRegistry(prefs),
        document_cache=DocumentTextCache(text_loader),
        events=events,
    )


__all__ = ["configure_logging", "create_session", "load_settings"]
