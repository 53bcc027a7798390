"""Document text caching and context-block construction."""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from ..chat.documents import DocumentRef
from ..chat.text_utils import sanitize_text

LOGGER = logging.getLogger(__name__)

TextLoader = Callable[[DocumentRef], Union[str, None, Awaitable[Optional[str]]]]


@dataclass(frozen=True, slots=True)
class Credentials:
    """Endpoint credentials handed to context builders that call remote services."""

    api_base: str = ""
    api_key: str = ""
    model: str = ""


@runtime_checkable
class ContextBuilder(Protocol):
    async def build_context(
        self,
        document_text: str | None,
        question: str,
        has_attachments: bool,
        credentials: Credentials,
    ) -> str: ...


class DocumentTextCache:
    """Keyed cache of extracted document text with single-flight population."""

    def __init__(self, loader: TextLoader | None = None, *, max_entries: int = 32) -> None:
        self._loader = loader
        self._max_entries = max(1, max_entries)
        self._texts: OrderedDict[int, str] = OrderedDict()
        self._pending: dict[int, asyncio.Task[None]] = {}

    def get(self, item_id: int) -> str | None:
        text = self._texts.get(item_id)
        if text is not None:
            self._texts.move_to_end(item_id)
        return text

    def put(self, item_id: int, text: str) -> None:
        self._texts[item_id] = text
        self._texts.move_to_end(item_id)
        while len(self._texts) > self._max_entries:
            self._texts.popitem(last=False)

    def invalidate(self, item_id: int) -> None:
        self._texts.pop(item_id, None)

    async def ensure_cached(self, ref: DocumentRef) -> None:
        if ref.item_id in self._texts or self._loader is None:
            return
        task = self._pending.get(ref.item_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._populate(ref))
            self._pending[ref.item_id] = task
        await asyncio.shield(task)

    async def _populate(self, ref: DocumentRef) -> None:
        try:
            result = self._loader(ref) if self._loader is not None else None
            if inspect.isawaitable(result):
                result = await result
            if result:
                self.put(ref.item_id, sanitize_text(str(result)))
        except Exception:
            LOGGER.warning("Failed to extract text for item %s", ref.item_id, exc_info=True)
        finally:
            self._pending.pop(ref.item_id, None)


class ExcerptContextBuilder:
    """Returns the leading part of the document text within a character budget."""

    def __init__(self, *, max_chars: int = 24_000, image_max_chars: int = 12_000) -> None:
        self._max_chars = max(0, max_chars)
        self._image_max_chars = max(0, image_max_chars)

    async def build_context(
        self,
        document_text: str | None,
        question: str,
        has_attachments: bool,
        credentials: Credentials,
    ) -> str:
        if not document_text:
            return ""
        text = re.sub(r"\n{3,}", "\n\n", document_text).strip()
        budget = self._image_max_chars if has_attachments else self._max_chars
        if len(text) <= budget:
            return text
        cut = text.rfind("\n", 0, budget)
        if cut < budget // 2:
            cut = budget
        return text[:cut].rstrip() + "\n[... document truncated ...]"


__all__ = [
    "Credentials",
    "ContextBuilder",
    "DocumentTextCache",
    "ExcerptContextBuilder",
    "TextLoader",
]
