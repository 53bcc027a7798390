"""Durable per-conversation message logs."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections import defaultdict
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Protocol, Sequence, runtime_checkable

from ..chat.constants import PERSISTED_HISTORY_LIMIT
from ..chat.message_model import StoredMessage
from ..errors import LoadFailure, PersistFailure

LOGGER = logging.getLogger(__name__)


@runtime_checkable
class MessageStore(Protocol):
    """Append/load/prune/clear contract used by the conversation core."""

    async def append(self, key: int, message: StoredMessage) -> None: ...

    async def load(self, key: int, limit: int = PERSISTED_HISTORY_LIMIT) -> list[StoredMessage]: ...

    async def prune(self, key: int, keep: int = PERSISTED_HISTORY_LIMIT) -> None: ...

    async def clear(self, key: int) -> None: ...


def normalize_key(key: Any) -> int | None:
    """Return *key* as a positive integer, or ``None`` when it cannot be one."""

    if isinstance(key, bool):
        return None
    try:
        value = int(key)
    except (TypeError, ValueError):
        return None
    if value != key and not isinstance(key, str):
        return None
    return value if value > 0 else None


def normalize_limit(limit: Any, default: int = PERSISTED_HISTORY_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        return default
    return max(1, value)


class SqliteMessageStore:
    """SQLite-backed message log keyed by conversation."""

    def __init__(self, db_path: Path | str) -> None:
        self._path = Path(db_path)
        if str(db_path) != ":memory:":
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._lock = RLock()
        self._create_schema()

    @property
    def path(self) -> Path:
        return self._path

    def _create_schema(self) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS chat_messages (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        item_id INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        text TEXT NOT NULL,
                        timestamp INTEGER NOT NULL,
                        selected_text TEXT,
                        model_name TEXT,
                        reasoning_summary TEXT,
                        reasoning_details TEXT
                    )
                    """
                )
                self._conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_chat_messages_item_time "
                    "ON chat_messages(item_id, timestamp)"
                )

    async def append(self, key: int, message: StoredMessage) -> None:
        item_id = normalize_key(key)
        if item_id is None:
            return
        await self._run_blocking(self.append_sync, item_id, message)

    async def load(self, key: int, limit: int = PERSISTED_HISTORY_LIMIT) -> list[StoredMessage]:
        item_id = normalize_key(key)
        if item_id is None:
            return []
        return await self._run_blocking(self.load_sync, item_id, normalize_limit(limit))

    async def prune(self, key: int, keep: int = PERSISTED_HISTORY_LIMIT) -> None:
        item_id = normalize_key(key)
        if item_id is None:
            return
        await self._run_blocking(self.prune_sync, item_id, keep)

    async def clear(self, key: int) -> None:
        item_id = normalize_key(key)
        if item_id is None:
            return
        await self._run_blocking(self.clear_sync, item_id)

    def append_sync(self, item_id: int, message: StoredMessage) -> None:
        try:
            with self._lock:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO chat_messages (
                            item_id, role, text, timestamp, selected_text,
                            model_name, reasoning_summary, reasoning_details
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            item_id,
                            message.role,
                            message.text,
                            int(message.timestamp),
                            message.selected_text,
                            message.model_name,
                            message.reasoning_summary,
                            message.reasoning_details,
                        ),
                    )
        except sqlite3.Error as exc:
            raise PersistFailure(f"Failed to append message for item {item_id}", {"item_id": item_id}) from exc

    def load_sync(self, item_id: int, limit: int) -> list[StoredMessage]:
        try:
            with self._lock:
                rows = self._conn.execute(
                    """
                    SELECT * FROM (
                        SELECT id, role, text, timestamp, selected_text, model_name,
                               reasoning_summary, reasoning_details
                        FROM chat_messages
                        WHERE item_id = ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                    )
                    ORDER BY timestamp ASC, id ASC
                    """,
                    (item_id, limit),
                ).fetchall()
        except sqlite3.Error as exc:
            raise LoadFailure(f"Failed to load messages for item {item_id}", {"item_id": item_id}) from exc
        return [self._row_to_message(row) for row in rows]

    def prune_sync(self, item_id: int, keep: int) -> None:
        try:
            keep = int(keep)
        except (TypeError, ValueError):
            keep = PERSISTED_HISTORY_LIMIT
        if keep <= 0:
            self.clear_sync(item_id)
            return
        try:
            with self._lock:
                with self._conn:
                    self._conn.execute(
                        """
                        DELETE FROM chat_messages
                        WHERE id IN (
                            SELECT id FROM chat_messages
                            WHERE item_id = ?
                            ORDER BY timestamp DESC, id DESC
                            LIMIT -1 OFFSET ?
                        )
                        """,
                        (item_id, keep),
                    )
        except sqlite3.Error as exc:
            raise PersistFailure(f"Failed to prune messages for item {item_id}", {"item_id": item_id}) from exc

    def clear_sync(self, item_id: int) -> None:
        try:
            with self._lock:
                with self._conn:
                    self._conn.execute("DELETE FROM chat_messages WHERE item_id = ?", (item_id,))
        except sqlite3.Error as exc:
            raise PersistFailure(f"Failed to clear messages for item {item_id}", {"item_id": item_id}) from exc

    def count_sync(self, item_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM chat_messages WHERE item_id = ?", (item_id,)
            ).fetchone()
        return int(row[0]) if row else 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _row_to_message(self, row: sqlite3.Row) -> StoredMessage:
        return StoredMessage(
            role=row["role"],
            text=row["text"] or "",
            timestamp=int(row["timestamp"]),
            selected_text=row["selected_text"],
            model_name=row["model_name"],
            reasoning_summary=row["reasoning_summary"],
            reasoning_details=row["reasoning_details"],
        )

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args))


class InMemoryMessageStore:
    """Process-local :class:`MessageStore` used for ephemeral sessions."""

    def __init__(self) -> None:
        self._logs: defaultdict[int, list[StoredMessage]] = defaultdict(list)

    async def append(self, key: int, message: StoredMessage) -> None:
        item_id = normalize_key(key)
        if item_id is None:
            return
        self._logs[item_id].append(message)

    async def load(self, key: int, limit: int = PERSISTED_HISTORY_LIMIT) -> list[StoredMessage]:
        item_id = normalize_key(key)
        if item_id is None or item_id not in self._logs:
            return []
        ordered = sorted(enumerate(self._logs[item_id]), key=lambda pair: (pair[1].timestamp, pair[0]))
        return [message for _, message in ordered][-normalize_limit(limit):]

    async def prune(self, key: int, keep: int = PERSISTED_HISTORY_LIMIT) -> None:
        item_id = normalize_key(key)
        if item_id is None or item_id not in self._logs:
            return
        if keep <= 0:
            self._logs.pop(item_id, None)
            return
        self._logs[item_id] = await self.load(item_id, keep)

    async def clear(self, key: int) -> None:
        item_id = normalize_key(key)
        if item_id is not None:
            self._logs.pop(item_id, None)

    def messages(self, key: int) -> Sequence[StoredMessage]:
        return tuple(self._logs.get(key, ()))


__all__ = [
    "MessageStore",
    "SqliteMessageStore",
    "InMemoryMessageStore",
    "normalize_key",
    "normalize_limit",
]
