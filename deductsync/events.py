"""In-process event bus for broadcasting state changes to observers."""

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)

DEDUCTIONS_UPDATED = "deductions_updated"
WORKER_MESSAGE = "worker_message"

# Subscribing to this name receives every event
ALL_EVENTS = "*"


@dataclass
class Event:
    """A broadcast event."""

    name: str
    payload: dict[str, Any]
    timestamp: float = field(default_factory=time.time)


EventCallback = Callable[[Event], None]


class EventBus:
    """Synchronous broadcast channel with per-event history."""

    def __init__(self, history_size: int = 50):
        self._subscribers: dict[str, list[EventCallback]] = {}
        self._history: dict[str, deque[Event]] = {}
        self._history_size = history_size

    def subscribe(self, name: str, callback: EventCallback) -> Callable[[], None]:
        """Register a callback for an event name.

        Args:
            name: Event name, or "*" for all events.
            callback: Called with each Event.

        Returns:
            Function that removes the subscription.
        """
        self._subscribers.setdefault(name, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def emit(self, name: str, payload: dict[str, Any]) -> int:
        """Broadcast an event to its subscribers.

        Callback failures are logged and do not stop delivery.

        Returns:
            Number of callbacks that received the event.
        """
        event = Event(name=name, payload=payload)

        if name not in self._history:
            self._history[name] = deque(maxlen=self._history_size)
        self._history[name].append(event)

        callbacks = list(self._subscribers.get(name, [])) + list(
            self._subscribers.get(ALL_EVENTS, [])
        )
        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Event subscriber for {name} failed: {e}")

        logger.debug(f"Emitted {name} to {delivered} subscriber(s)")
        return delivered

    def subscriber_count(self, name: str) -> int:
        return len(self._subscribers.get(name, [])) + len(
            self._subscribers.get(ALL_EVENTS, [])
        )

    def get_recent_events(self, name: str | None = None, count: int = 10) -> list[Event]:
        """Get recent events, newest first.

        Args:
            name: Optional event name filter.
            count: Maximum number of events to return.
        """
        if name:
            return list(reversed(self._history.get(name, [])))[:count]

        events = [e for history in self._history.values() for e in history]
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:count]
