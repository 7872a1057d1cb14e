"""
In-process Event Bus

Synchronous pub/sub for committed events. Notification dispatch and other
after-commit reactions subscribe here, so a failing subscriber can never
undo or block a transition that already committed.
"""

import threading
from collections import defaultdict
from typing import Callable

from trackify_engine.kernel.events import Event
from trackify_engine.kernel.logging import get_logger
from trackify_engine.kernel.metrics import collaborator_failures_total

logger = get_logger(__name__)

EventHandler = Callable[[Event], None]

ALL_EVENTS = "*"


class InProcessBus:
    """
    Simple synchronous in-process bus

    Handlers subscribe per event type, or to every event with ALL_EVENTS.
    Handler failures are logged and counted, never propagated.
    """

    def __init__(self) -> None:
        self._event_handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def register_event_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register an event handler (can have multiple per event type)

        Args:
            event_type: Event type to handle, or ALL_EVENTS
            handler: Callable receiving the committed event
        """
        with self._lock:
            self._event_handlers[event_type].append(handler)
            handler_count = len(self._event_handlers[event_type])
        logger.debug(
            "Event handler registered",
            event_type=event_type,
            total_handlers=handler_count,
        )

    def publish_event(self, event: Event) -> None:
        """
        Publish an event to all registered handlers

        Handlers run in registration order; one failing handler doesn't
        affect the others.
        """
        with self._lock:
            handlers = list(self._event_handlers.get(event.event_type, [])) + list(
                self._event_handlers.get(ALL_EVENTS, [])
            )

        if not handlers:
            logger.debug(
                "No handlers registered for event type",
                event_type=event.event_type,
                event_id=event.event_id,
            )
            return

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                collaborator_failures_total.labels(collaborator="bus_handler").inc()
                logger.error(
                    "Event handler failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    stream_id=event.stream_id,
                    error=str(e),
                    exc_info=True,
                )

    def publish_events(self, events: list[Event]) -> None:
        """Publish multiple events in order"""
        for event in events:
            self.publish_event(event)

    def get_event_types(self) -> list[str]:
        """List event types with at least one handler"""
        with self._lock:
            return list(self._event_handlers.keys())

    def clear(self) -> None:
        """Remove all registered handlers (useful for testing)"""
        with self._lock:
            self._event_handlers.clear()
