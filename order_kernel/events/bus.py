"""
Event Bus — fan-out of outbound domain events to collaborators.

Delivery is fire-and-forget from the kernel's perspective: a failing
subscriber is logged and skipped, and never rolls back the command that
produced the event.
"""

import logging
import threading
from typing import Callable, Dict, List, Type

from order_kernel.models.events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class EventBus:
    def __init__(self):
        self._handlers: Dict[Type[DomainEvent], List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> None:
        """Subscribe to an event type. DomainEvent receives every event."""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            handlers = [
                h
                for event_type, hs in self._handlers.items()
                if isinstance(event, event_type)
                for h in hs
            ]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event": event.name, "order_id": event.order_id},
                )


class RecordingSubscriber:
    """Keeps every event it receives. Handy for portals' polling views and tests."""

    def __init__(self):
        self.events: List[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: Type[DomainEvent]) -> List[DomainEvent]:
        return [e for e in self.events if isinstance(e, event_type)]
