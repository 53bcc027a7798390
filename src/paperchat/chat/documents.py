"""Document references, conversation identity and context source selection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True, slots=True)
class DocumentRef:
    """A library item a conversation can be attached to.

    Attachments with a parent share their parent's conversation, so a PDF and
    the record it belongs to show one history.
    """

    item_id: int
    parent_id: Optional[int] = None
    is_attachment: bool = False
    content_type: Optional[str] = None
    title: str = ""

    @property
    def conversation_key(self) -> int:
        if self.is_attachment and self.parent_id:
            return self.parent_id
        return self.item_id

    @property
    def is_pdf(self) -> bool:
        return self.is_attachment and (self.content_type or "").lower() == PDF_CONTENT_TYPE

    @property
    def label(self) -> str:
        return self.title or f"item {self.item_id}"


def conversation_key_for(ref: DocumentRef | int) -> int:
    if isinstance(ref, DocumentRef):
        return ref.conversation_key
    return int(ref)


@dataclass(frozen=True, slots=True)
class ContextSource:
    """The document chosen to supply context, plus a status line describing it."""

    document: Optional[DocumentRef]
    status: str


def resolve_context_source(
    item: DocumentRef,
    *,
    active_attachment: DocumentRef | None = None,
    first_pdf_child: DocumentRef | None = None,
) -> ContextSource:
    """Pick the PDF whose text should ground an answer about *item*.

    Preference order: a PDF attachment open in the active reader tab, *item*
    itself when it is a PDF attachment, then the first PDF child of a regular
    item.
    """

    if active_attachment is not None and active_attachment.is_pdf:
        return ContextSource(active_attachment, f"Using context: {active_attachment.label} (active tab)")
    if item.is_pdf:
        return ContextSource(item, f"Using the selected {item.label} as context")
    if not item.is_attachment and first_pdf_child is not None and first_pdf_child.is_pdf:
        return ContextSource(
            first_pdf_child,
            f"Using first child item from {item.label} as context",
        )
    return ContextSource(None, "No PDF context found; answering without document context.")


__all__ = [
    "PDF_CONTENT_TYPE",
    "DocumentRef",
    "ContextSource",
    "conversation_key_for",
    "resolve_context_source",
]
