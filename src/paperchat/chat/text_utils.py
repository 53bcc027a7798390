"""Text helpers for prompts and message bodies."""

from __future__ import annotations

import re

from .constants import SELECTED_TEXT_MAX_LENGTH

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_LONE_SURROGATES = re.compile(r"[\ud800-\udfff]")


def sanitize_text(text: str | None) -> str:
    """Strip control characters and unpaired surrogates, keep newlines and tabs."""

    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", text)
    return _LONE_SURROGATES.sub("�", cleaned)


def truncate(text: str, limit: int, *, suffix: str = "…") -> str:
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(suffix))].rstrip() + suffix


def normalize_selected_text(text: str | None) -> str:
    """Collapse runs of blank lines and trim a selection taken from a document."""

    if not text:
        return ""
    cleaned = sanitize_text(text).replace("\r\n", "\n").replace("\r", "\n")
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def build_question_with_selection(question: str, selected_text: str | None) -> str:
    """Prefix *question* with a quoted selection when one is given."""

    selection = normalize_selected_text(selected_text)
    if not selection:
        return question
    selection = truncate(selection, SELECTED_TEXT_MAX_LENGTH)
    return f'Selected text from the document:\n"""\n{selection}\n"""\n\n{question}'


def attachment_marker(count: int) -> str:
    if count <= 0:
        return ""
    noun = "image" if count == 1 else "images"
    return f"[📷 {count} {noun} attached]"


def build_user_message_text(question: str, image_count: int = 0) -> str:
    """Return the user-visible message body, annotated with an attachment count."""

    marker = attachment_marker(image_count)
    if not marker:
        return question
    if not question:
        return marker
    return f"{question}\n{marker}"


__all__ = [
    "sanitize_text",
    "truncate",
    "normalize_selected_text",
    "build_question_with_selection",
    "attachment_marker",
    "build_user_message_text",
]
