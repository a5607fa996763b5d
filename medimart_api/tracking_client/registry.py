# medimart_api/tracking_client/registry.py

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


class HandlerRegistry:
    """
    Maps event names to the callbacks interested in them.

    Registering the same callback twice, or removing one that is not
    registered, is a no-op. A callback that raises does not stop delivery to
    the others.
    """

    def __init__(self):
        self._handlers: dict[str, set[EventHandler]] = {}

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers.setdefault(event, set()).add(handler)

    def off(self, event: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers is None:
            return
        handlers.discard(handler)
        if not handlers:
            del self._handlers[event]

    def emit(self, event: str, data: Any) -> int:
        """Calls every handler of ``event``; returns how many returned normally."""
        delivered = 0
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(data)
                delivered += 1
            except Exception:
                logger.exception(f"Error in handler for {event}")
        return delivered

    def handlers(self, event: str) -> set[EventHandler]:
        return set(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
