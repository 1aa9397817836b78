"""
Typed publish/subscribe events.

Handlers are registered per event class, so a consumer interested in closes
never sees messages. Handler exceptions are logged and never interrupt
dispatch to the remaining handlers.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Callable, NamedTuple, TypeVar, Union

import structlog

if TYPE_CHECKING:
    from .datafeed.orderbook import OrderBook
    from .types import ValidationResult

logger = structlog.get_logger(__name__)


class Opened(NamedTuple):
    """Transport reached the Open state."""
    connection_id: str
    url: str


class Closed(NamedTuple):
    """Transport left the Open/Connecting state."""
    code: int | None
    reason: str
    was_clean: bool
    will_reconnect: bool


class ErrorOccurred(NamedTuple):
    """Transport or protocol error; published for observability only."""
    error: Exception
    connection_id: str | None


class MessageReceived(NamedTuple):
    """Inbound message other than heartbeat replies."""
    data: Any                 # Parsed JSON, or the raw text when parsing failed
    raw: str | bytes
    received_at: int          # epoch ms
    channel: str              # "message:<type>" for typed payloads, else "message"


class BookUpdated(NamedTuple):
    """Order book stored; validation findings travel alongside the data."""
    symbol: str
    book: OrderBook
    validation: ValidationResult
    source: str               # "stream" or "rest"


class BookRejected(NamedTuple):
    """Order book payload could not be normalized and was dropped."""
    error: Exception
    payload: Any
    source: str


Event = Union[Opened, Closed, ErrorOccurred, MessageReceived, BookUpdated, BookRejected]
E = TypeVar("E")
Handler = Callable[[Any], Any]


class EventBus:
    """
    Explicit event dispatcher keyed by event type.

    Thread-safety: NOT thread-safe. Designed for single-threaded async use.
    """

    __slots__ = ('_handlers', '_tasks')

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        """Register handler; returns a callable that removes it again."""
        self._handlers.setdefault(event_type, []).append(handler)
        return lambda: self.unsubscribe(event_type, handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event) -> None:
        """
        Deliver event to every handler registered for its type.

        Coroutine handlers are scheduled on the running loop.
        """
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._task_done)
            except Exception:
                logger.exception("event_handler_failed", event=type(event).__name__)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "event_handler_failed",
                error=repr(task.exception()),
            )

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))
