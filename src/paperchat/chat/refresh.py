"""Coalesced refresh signalling for streaming updates."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .constants import REFRESH_INTERVAL

LOGGER = logging.getLogger(__name__)

RenderFn = Callable[[], None]


class RefreshScheduler:
    """Runs at most one render per coalescing window.

    The first :meth:`request` in a window schedules a timer; later requests in
    the same window only replace the callback. When the timer fires the latest
    callback runs once, reading whatever state exists at that moment.
    """

    def __init__(self, delay: float = REFRESH_INTERVAL, *, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._delay = max(0.0, float(delay))
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._render: RenderFn | None = None
        self._runs = 0

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def runs(self) -> int:
        """Number of renders executed so far."""

        return self._runs

    def request(self, render: RenderFn) -> bool:
        """Ask for a refresh; return ``True`` when a new timer was scheduled."""

        self._render = render
        if self._handle is not None:
            return False
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)
        return True

    def flush(self) -> None:
        """Run a pending render immediately."""

        if self._handle is None:
            return
        self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._render = None

    def _fire(self) -> None:
        self._handle = None
        render, self._render = self._render, None
        if render is None:
            return
        self._runs += 1
        try:
            render()
        except Exception:
            LOGGER.exception("Refresh callback failed")


__all__ = ["RefreshScheduler", "RenderFn"]
