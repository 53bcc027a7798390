"""Error types raised across the chat session core.

Collaborator failures (loading or persisting history) are recovered inside
the session and only logged. Generation failures become a terminal assistant
message. The classes here give both paths a shared vocabulary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Machine-readable identifiers attached to :class:`PaperChatError`."""

    LOAD_FAILED = "load_failed"
    PERSIST_FAILED = "persist_failed"
    GENERATION_FAILED = "generation_failed"
    CANCELLED = "cancelled"
    CONFIGURATION_GAP = "configuration_gap"
    INTERNAL_ERROR = "internal_error"


@dataclass
class PaperChatError(Exception):
    """Base exception for the package.

    Attributes:
        message: Human-readable description.
        details: Additional structured context for logs.
    """

    message: str
    details: dict[str, Any] = field(default_factory=dict)

    error_code: ClassVar[str] = ErrorCode.INTERNAL_ERROR

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class LoadFailure(PaperChatError):
    """The message store could not read a conversation."""

    error_code: ClassVar[str] = ErrorCode.LOAD_FAILED


@dataclass
class PersistFailure(PaperChatError):
    """The message store could not append, prune, or clear."""

    error_code: ClassVar[str] = ErrorCode.PERSIST_FAILED


@dataclass
class GenerationFailure(PaperChatError):
    """The generation backend or its transport failed."""

    error_code: ClassVar[str] = ErrorCode.GENERATION_FAILED


@dataclass
class GenerationCancelled(PaperChatError):
    """Raised by a backend when the request's cancellation handle fired."""

    message: str = "Request cancelled"

    error_code: ClassVar[str] = ErrorCode.CANCELLED


@dataclass
class ConfigurationGap(GenerationFailure):
    """No usable endpoint or model could be resolved for a request."""

    error_code: ClassVar[str] = ErrorCode.CONFIGURATION_GAP


def is_cancellation_error(exc: BaseException) -> bool:
    """Return ``True`` when *exc* signals cancellation rather than failure."""

    if isinstance(exc, GenerationCancelled):
        return True
    name = type(exc).__name__
    return name in {"CancelledError", "AbortError"}


__all__ = [
    "ErrorCode",
    "PaperChatError",
    "LoadFailure",
    "PersistFailure",
    "GenerationFailure",
    "GenerationCancelled",
    "ConfigurationGap",
    "is_cancellation_error",
]
