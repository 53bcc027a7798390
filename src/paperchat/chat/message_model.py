"""Chat message data models."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

ChatRole = Literal["user", "assistant"]


def _now_ms() -> int:
    """Return the current wall-clock time in milliseconds."""

    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class StoredMessage:
    """The durable shape of a message, without view-only state."""

    role: ChatRole
    text: str
    timestamp: int
    selected_text: Optional[str] = None
    model_name: Optional[str] = None
    reasoning_summary: Optional[str] = None
    reasoning_details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "role": self.role,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        for key in ("selected_text", "model_name", "reasoning_summary", "reasoning_details"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload


@dataclass(slots=True)
class ReasoningDelta:
    """Incremental reasoning output; either part may be absent."""

    summary: Optional[str] = None
    details: Optional[str] = None

    @property
    def empty(self) -> bool:
        return not self.summary and not self.details


@dataclass(slots=True)
class ChatMessage:
    """Represents one row of a conversation.

    ``streaming`` is ``True`` only for the assistant reply currently being
    produced. ``reasoning_open`` stays ``None`` until the first reasoning
    event, which defaults it to ``True`` (expanded).
    """

    role: ChatRole
    text: str = ""
    timestamp: int = 0
    selected_text: Optional[str] = None
    model_name: Optional[str] = None
    reasoning_summary: Optional[str] = None
    reasoning_details: Optional[str] = None
    reasoning_open: Optional[bool] = None
    streaming: bool = False

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = _now_ms()

    @classmethod
    def from_record(cls, record: StoredMessage) -> "ChatMessage":
        return cls(
            role=record.role,
            text=record.text,
            timestamp=record.timestamp,
            selected_text=record.selected_text,
            model_name=record.model_name,
            reasoning_summary=record.reasoning_summary,
            reasoning_details=record.reasoning_details,
        )

    def to_record(self) -> StoredMessage:
        """Return the persisted form of this message."""

        return StoredMessage(
            role=self.role,
            text=self.text,
            timestamp=self.timestamp,
            selected_text=self.selected_text or None,
            model_name=self.model_name or None,
            reasoning_summary=self.reasoning_summary or None,
            reasoning_details=self.reasoning_details or None,
        )

    def as_history_entry(self) -> Dict[str, str]:
        """Return the role/content pair sent to the backend as history."""

        return {"role": self.role, "content": self.text}

    def apply_reasoning(self, delta: ReasoningDelta) -> bool:
        """Accumulate a reasoning delta; return ``True`` when anything changed."""

        if delta.empty:
            return False
        if self.reasoning_open is None:
            self.reasoning_open = True
        if delta.summary:
            self.reasoning_summary = (self.reasoning_summary or "") + delta.summary
        if delta.details:
            self.reasoning_details = (self.reasoning_details or "") + delta.details
        return True

    def clear_reasoning(self) -> None:
        self.reasoning_summary = None
        self.reasoning_details = None
        self.reasoning_open = False


__all__ = ["ChatRole", "ChatMessage", "ReasoningDelta", "StoredMessage"]
