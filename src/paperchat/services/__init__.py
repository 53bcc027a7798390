"""Settings, preferences, and durable message storage."""

from .message_store import InMemoryMessageStore, MessageStore, SqliteMessageStore
from .preferences import PreferenceStore, SecretVault
from .settings import Settings, SettingsStore

__all__ = [
    "InMemoryMessageStore",
    "MessageStore",
    "PreferenceStore",
    "SecretVault",
    "Settings",
    "SettingsStore",
    "SqliteMessageStore",
]
