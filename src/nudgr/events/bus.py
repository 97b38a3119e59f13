"""In-process event bus.

Services publish after their transaction commits. Handlers for one event run
sequentially in subscription order; a handler that raises is logged and the
remaining handlers still run, so one broken subscriber cannot block the
others or fail the request that published the event.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from nudgr.events.types import DomainEvent

logger = structlog.get_logger()

E = TypeVar("E", bound=DomainEvent)
Handler = Callable[[Any], Awaitable[None]]


class EventBus:
    """Dispatches domain events to async handlers keyed by event class."""

    def __init__(self) -> None:
        self._handlers: dict[type[DomainEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], Awaitable[None]]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type``. Returns a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def publish(self, event: DomainEvent) -> int:
        """Run every handler subscribed to the event's exact class.

        Returns the number of handlers that completed without raising.
        """
        handlers = list(self._handlers.get(type(event), ()))
        succeeded = 0
        for handler in handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    user_id=event.user_id,
                )
            else:
                succeeded += 1
        return succeeded

    def handler_count(self, event_type: type[DomainEvent]) -> int:
        return len(self._handlers.get(event_type, ()))

    def clear(self) -> None:
        self._handlers.clear()


# Global singleton, wired at application startup
bus = EventBus()
