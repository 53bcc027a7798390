"""Events published by :class:`~paperchat.chat.session.ChatSession`.

A host surface subscribes to these to disable or re-enable its input, show
status text, and re-render a conversation while a reply streams in.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, DefaultDict, Generic, Literal, TypeVar
from weakref import WeakMethod

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]

StatusVariant = Literal["sending", "ready", "error"]


@dataclass(slots=True)
class Event:
    """Base class for every session event."""


@dataclass(slots=True)
class RequestStarted(Event):
    """A send minted a new request id."""

    conversation_key: int
    request_id: int


@dataclass(slots=True)
class StatusChanged(Event):
    """Status line text for a conversation."""

    conversation_key: int | None
    text: str
    variant: StatusVariant = "sending"


@dataclass(slots=True)
class InputStateChanged(Event):
    """The input surface should be enabled or disabled."""

    conversation_key: int | None
    enabled: bool
    request_id: int | None = None


@dataclass(slots=True)
class ConversationUpdated(Event):
    """The message list of a conversation changed and should be re-rendered."""

    conversation_key: int
    streaming: bool = False


@dataclass(slots=True)
class RequestFinished(Event):
    """A send reached its terminal state."""

    conversation_key: int
    request_id: int
    outcome: str
    error: str | None = None


# Published for every streamed delta; not logged.
_QUIET_EVENT_TYPES: set[type] = {ConversationUpdated}


class EventBus(Generic[E]):
    """Synchronous publish/subscribe bus.

    Bound-method handlers are held weakly so a discarded view does not keep
    receiving updates. Handler exceptions are logged and swallowed so one
    faulty subscriber cannot stall a streaming reply.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register *handler* for events of exactly *event_type*."""
        self._handlers[event_type].append(_HandlerRef.create(handler))
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove the first registration of *handler*; unknown handlers are ignored."""
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return
        for index, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(index)
                return

    def publish(self, event: E) -> None:
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        if not handlers:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(handlers))

        dead_indices: list[int] = []
        for index, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(index)
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
        for index in reversed(dead_indices):
            handlers.pop(index)

    def clear(self) -> None:
        self._handlers.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Weak reference for bound methods, strong reference for everything else."""

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass
        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        return resolved is not None and resolved == handler


def _handler_name(handler: Handler) -> str:
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        return f"{type(handler.__self__).__name__}.{handler.__func__.__name__}"
    return getattr(handler, "__name__", repr(handler))


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "StatusVariant",
    "RequestStarted",
    "StatusChanged",
    "InputStateChanged",
    "ConversationUpdated",
    "RequestFinished",
]
