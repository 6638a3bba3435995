"""
Event Dispatcher - one handler slot per event kind.

Handlers run one at a time, in the order events are dispatched, no matter
which thread dispatches them.
"""

import logging
import threading
from typing import Callable, Dict, Optional

from .events import Event, EventKind

logger = logging.getLogger(__name__)

Handler = Callable[[Event], None]


class EventDispatcher:
    """
    Typed handler registration table.

    Registering a handler for a kind replaces the previous one. After
    seal() no further events are delivered until unseal().
    """

    def __init__(self):
        self._handlers: Dict[EventKind, Handler] = {}
        self._lock = threading.RLock()
        self._sealed = False
        self._dispatched_count = 0
        self._handler_errors = 0

    def register(self, kind: EventKind, handler: Optional[Handler]) -> None:
        """Set (or with None, clear) the handler for an event kind."""
        with self._lock:
            if handler is None:
                self._handlers.pop(kind, None)
            else:
                self._handlers[kind] = handler

    def handler_for(self, kind: EventKind) -> Optional[Handler]:
        return self._handlers.get(kind)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def dispatch(self, event: Event) -> bool:
        """
        Invoke the handler registered for the event's kind.

        Returns:
            True if a handler ran
        """
        with self._lock:
            if self._sealed:
                logger.debug(f"Dropping {event.kind.value} event after close")
                return False
            return self._invoke(event)

    def seal(self, final_event: Optional[Event] = None) -> None:
        """Deliver an optional last event, then stop dispatching."""
        with self._lock:
            if self._sealed:
                return
            if final_event is not None:
                self._invoke(final_event)
            self._sealed = True

    def unseal(self) -> None:
        with self._lock:
            self._sealed = False

    def _invoke(self, event: Event) -> bool:
        handler = self._handlers.get(event.kind)
        self._dispatched_count += 1
        if handler is None:
            return False
        try:
            handler(event)
        except Exception:
            self._handler_errors += 1
            logger.exception(f"Handler for {event.kind.value} raised")
        return True

    def get_stats(self) -> dict:
        return {
            "dispatched": self._dispatched_count,
            "handler_errors": self._handler_errors,
            "registered": sorted(k.value for k in self._handlers),
        }
