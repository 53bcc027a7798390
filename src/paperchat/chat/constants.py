"""Shared limits and literal markers for chat sessions."""

from __future__ import annotations

PERSISTED_HISTORY_LIMIT = 200
MAX_HISTORY_MESSAGES = 12
REFRESH_INTERVAL = 0.05

CANCELLED_MARKER = "[Cancelled]"
NO_RESPONSE_MARKER = "No response."
ERROR_TEXT_LIMIT = 500
ERROR_STATUS_LIMIT = 40

SELECTED_TEXT_MAX_LENGTH = 4000

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_TOKENS = 2048

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful research assistant. Answer questions about the provided "
    "document accurately and concisely. Ground your answers in the document "
    "context when it is available, and say so when the context does not contain "
    "the answer."
)
