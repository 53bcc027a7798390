"""Hand-off of finished conversations to an external note sink."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Protocol, runtime_checkable

from .message_model import ChatMessage, StoredMessage
from .text_utils import sanitize_text


@dataclass(slots=True)
class HistoryExport:
    """Plain-text transcript plus the records it was built from."""

    text: str
    records: list[StoredMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def empty(self) -> bool:
        return not self.records


@runtime_checkable
class NoteSink(Protocol):
    """Receives exported conversations, e.g. to save them as a note."""

    async def save_history(self, conversation_key: int, export: HistoryExport) -> None: ...


def speaker_for(message: ChatMessage | StoredMessage) -> str:
    if message.role == "user":
        return "user"
    return sanitize_text(message.model_name or "").strip() or "model"


def build_history_export(messages: Iterable[ChatMessage]) -> HistoryExport:
    """Build a transcript of the finished messages in *messages*.

    Streaming placeholders and empty messages are skipped. A user message
    with a stored selection is prefixed with that selection.
    """

    lines: list[str] = []
    records: list[StoredMessage] = []
    for message in messages:
        if message.streaming:
            continue
        text = sanitize_text(message.text).strip()
        selected = sanitize_text(message.selected_text or "").strip()
        if not text and not selected:
            continue
        if message.role == "user" and selected:
            text = f"Selected text:\n{selected}\n\n{text}"
        lines.append(f"{speaker_for(message)}: {text}")
        records.append(message.to_record())
    return HistoryExport(text="\n\n".join(lines), records=records)


__all__ = ["HistoryExport", "NoteSink", "build_history_export", "speaker_for"]
