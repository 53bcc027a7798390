"""Request identity, the cancellation watermark, and cancellation handles."""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)


class CancellationHandle:
    """Cancellation signal for one send, passed down to the backend.

    ``cancel`` is idempotent. Backends can poll :attr:`cancelled` or await
    :meth:`wait` to stop reading from their transport.
    """

    __slots__ = ("request_id", "_event", "_reason")

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = "cancelled" if self.cancelled else "live"
        return f"CancellationHandle(request_id={self.request_id}, {state})"


class RequestTracker:
    """Mints request ids and records which of them are cancelled.

    ``cancel_up_to(n)`` raises a watermark; every request with an id at or
    below it counts as cancelled. The tracker also remembers the single active
    :class:`CancellationHandle`; issuing a new one replaces it without
    signalling the old one.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()
        self._latest = 0
        self._watermark = 0
        self._active: CancellationHandle | None = None

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def current_request_id(self) -> int:
        """Most recently minted id, ``0`` before the first send."""

        return self._latest

    @property
    def active_handle(self) -> CancellationHandle | None:
        return self._active

    def next_request_id(self) -> int:
        with self._lock:
            request_id = next(self._counter)
            self._latest = request_id
        return request_id

    def cancel_up_to(self, request_id: int) -> int:
        with self._lock:
            if request_id > self._watermark:
                self._watermark = request_id
            watermark = self._watermark
        LOGGER.debug("Cancellation watermark now %s", watermark)
        return watermark

    def is_cancelled(self, request_id: int) -> bool:
        return self._watermark >= request_id

    def issue_handle(self, request_id: int) -> CancellationHandle:
        handle = CancellationHandle(request_id)
        with self._lock:
            self._active = handle
        return handle

    def release_handle(self, handle: CancellationHandle) -> bool:
        """Forget *handle* if it is still the active one."""

        with self._lock:
            if self._active is handle:
                self._active = None
                return True
        return False

    def signal_active(self, up_to: int) -> bool:
        """Fire the active handle when its request is covered by *up_to*."""

        handle = self._active
        if handle is None or handle.request_id > up_to:
            return False
        handle.cancel("user")
        return True


@dataclass(slots=True)
class CancellationToken:
    """Single source of truth for whether one send still matters.

    Combines the tracker watermark with the send's own handle. Delta handlers
    consult it before writing; resolution consults it once, authoritatively.
    """

    request_id: int
    tracker: RequestTracker
    handle: CancellationHandle | None = None
    _observed: bool = field(default=False, repr=False)

    @property
    def is_cancelled(self) -> bool:
        if self._observed:
            return True
        if self.tracker.is_cancelled(self.request_id):
            self._observed = True
        elif self.handle is not None and self.handle.cancelled:
            self._observed = True
        return self._observed

    def bind(self, handle: CancellationHandle) -> None:
        self.handle = handle

    def superseded(self) -> bool:
        """``True`` when a newer request has been minted since this one."""

        return self.tracker.current_request_id > self.request_id


__all__ = ["CancellationHandle", "CancellationToken", "RequestTracker"]
