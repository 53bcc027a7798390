"""In-memory conversations backed by a :class:`MessageStore`."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Coroutine, Sequence

from ..services.message_store import MessageStore
from .constants import PERSISTED_HISTORY_LIMIT
from .message_model import ChatMessage

LOGGER = logging.getLogger(__name__)


class LoadState(enum.Enum):
    NOT_LOADED = "not_loaded"
    LOADING = "loading"
    LOADED = "loaded"


class ConversationCache:
    """Ordered message lists per conversation key with single-flight loading.

    Concurrent :meth:`ensure_loaded` calls for one key share a single store
    read. A failed read seeds an empty conversation. The durable delete that
    :meth:`clear` starts runs in a tracked background task.
    """

    def __init__(self, store: MessageStore, *, limit: int = PERSISTED_HISTORY_LIMIT) -> None:
        self._store = store
        self._limit = max(1, int(limit))
        self._messages: dict[int, list[ChatMessage]] = {}
        self._states: dict[int, LoadState] = {}
        self._loads: dict[int, asyncio.Task[None]] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def store(self) -> MessageStore:
        return self._store

    def state(self, key: int) -> LoadState:
        return self._states.get(key, LoadState.NOT_LOADED)

    def is_loaded(self, key: int) -> bool:
        return self.state(key) is LoadState.LOADED

    async def ensure_loaded(self, key: int) -> None:
        if self.state(key) is LoadState.LOADED:
            return
        task = self._loads.get(key)
        if task is None:
            if key in self._messages:
                self._states[key] = LoadState.LOADED
                return
            self._states[key] = LoadState.LOADING
            task = asyncio.get_running_loop().create_task(self._load(key))
            self._loads[key] = task
        # Shield so one cancelled waiter does not abort the load for the others.
        await asyncio.shield(task)

    def get(self, key: int) -> list[ChatMessage]:
        """Return a snapshot list of the conversation; message objects are shared."""

        return list(self._messages.get(key, ()))

    def append(self, key: int, message: ChatMessage) -> None:
        messages = self._messages.setdefault(key, [])
        messages.append(message)
        overflow = len(messages) - self._limit
        if overflow > 0:
            del messages[:overflow]

    def clear(self, key: int) -> asyncio.Task[None] | None:
        """Drop *key* from memory, mark it loaded, and delete its durable log.

        Returns the background task performing the durable clear, or ``None``
        when no event loop is running.
        """

        self._messages.pop(key, None)
        self._states[key] = LoadState.LOADED
        pending = self._loads.pop(key, None)
        if pending is not None and not pending.done():
            LOGGER.debug("Conversation %s cleared while loading; discarding load result", key)
        return self.spawn(self._clear_durable(key), name=f"paperchat-clear-{key}")

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any] | None:
        """Run *coro* as a tracked background task."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            LOGGER.warning("No running event loop; background work %s skipped", name or coro)
            return None
        task = loop.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def drain(self) -> None:
        """Wait for background work started by :meth:`clear` or :meth:`spawn`."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def keys(self) -> Sequence[int]:
        return tuple(self._messages)

    async def _load(self, key: int) -> None:
        try:
            records = await self._store.load(key, self._limit)
            loaded = [ChatMessage.from_record(record) for record in records]
        except asyncio.CancelledError:
            if self.state(key) is LoadState.LOADING:
                self._states[key] = LoadState.NOT_LOADED
            raise
        except Exception:
            LOGGER.warning("Failed to load conversation %s; starting empty", key, exc_info=True)
            loaded = []
        finally:
            if self._loads.get(key) is asyncio.current_task():
                del self._loads[key]
        if self.state(key) is not LoadState.LOADING:
            return
        existing = self._messages.get(key, [])
        self._messages[key] = (loaded + existing)[-self._limit:]
        self._states[key] = LoadState.LOADED

    async def _clear_durable(self, key: int) -> None:
        try:
            await self._store.clear(key)
        except Exception:
            LOGGER.warning("Failed to clear stored conversation %s", key, exc_info=True)


__all__ = ["ConversationCache", "LoadState"]
