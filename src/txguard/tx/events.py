"""
Publish/subscribe channel for operation lifecycle events.
"""

import logging
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from .records import OperationRecord


logger = logging.getLogger(__name__)


class OperationEvent(str, Enum):
    """Lifecycle events published by the registry."""
    CREATED = "created"
    SUBMITTED = "submitted"
    UPDATED = "updated"
    CONFIRMED = "confirmed"
    FAILED = "failed"


Handler = Callable[[OperationEvent, OperationRecord], None]

# Subscribing to ``ALL_EVENTS`` receives every event
ALL_EVENTS = "*"


class EventChannel:
    """
    Synchronous observer channel.

    Handlers are called in registration order on the publishing thread.
    An exception raised by one handler is logged and does not stop
    delivery to the remaining handlers.
    """

    def __init__(self):
        self._handlers: List[tuple] = []
        self._lock = threading.Lock()

    def subscribe(self, event: Union[OperationEvent, str], handler: Handler) -> Callable[[], None]:
        """
        Register ``handler`` for ``event`` (or ``ALL_EVENTS``).

        Returns:
            Callable that removes the subscription
        """
        key = event if event == ALL_EVENTS else OperationEvent(event)
        entry = (key, handler)
        with self._lock:
            self._handlers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return unsubscribe

    def publish(self, event: OperationEvent, record: OperationRecord) -> int:
        """
        Deliver ``record`` to every handler of ``event``.

        Returns:
            Number of handlers that completed without raising
        """
        with self._lock:
            handlers = [h for key, h in self._handlers if key == ALL_EVENTS or key == event]

        delivered = 0
        for handler in handlers:
            try:
                handler(event, record)
                delivered += 1
            except Exception:
                logger.exception(f"Event handler failed for {event.value} on {record.id}")
        return delivered

    def handler_count(self, event: Optional[OperationEvent] = None) -> int:
        with self._lock:
            if event is None:
                return len(self._handlers)
            return sum(1 for key, _ in self._handlers if key == ALL_EVENTS or key == event)


__all__ = ["OperationEvent", "EventChannel", "ALL_EVENTS", "Handler"]
