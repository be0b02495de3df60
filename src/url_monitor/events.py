"""
Event channel for the URL monitor.

Components emit typed events (sync outcomes, completed checks, delivery
results). Observers subscribe with plain or async callables; the host can
additionally drain a bounded queue of recent events. A failing observer is
logged and never affects the emitting component.
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .audit_logger import AuditLogger
from .enums import EventType, LogLevel
from .models import utc_now


@dataclass
class Event:
    """A single event delivered to observers."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}


@runtime_checkable
class EventListener(Protocol):
    """Anything callable with an Event; may return an awaitable."""

    def __call__(self, event: Event) -> Any:
        ...


class EventBus:
    """
    Fan-out of events to registered listeners.

    ``emit`` awaits async listeners in registration order, so by the time it
    returns every listener has seen the event.
    """

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        queue_size: int = 100,
    ) -> None:
        """
        Initialize the event bus.

        Args:
            logger: Optional audit logger for listener failures
            queue_size: Capacity of the drainable queue; oldest events are dropped
        """
        self._listeners: list[Callable[[Event], Any]] = []
        self._queue: deque[Event] = deque(maxlen=queue_size)
        self._logger = logger

    def subscribe(self, listener: Callable[[Event], Any]) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that unsubscribes the listener
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Callable[[Event], Any]) -> bool:
        """
        Remove a listener.

        Returns:
            True if the listener was registered, False otherwise
        """
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    @property
    def listeners(self) -> list[Callable[[Event], Any]]:
        return list(self._listeners)

    async def emit(self, event_type: EventType, data: Optional[dict] = None) -> Event:
        """Publish an event to the queue and every listener."""
        event = Event(type=event_type, data=data or {})
        self._queue.append(event)

        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._logger:
                    self._logger.log(
                        LogLevel.ERROR,
                        "EventBus",
                        f"Listener failed for {event_type.value}",
                        {"error": str(e), "error_type": type(e).__name__},
                    )

        return event

    def drain(self) -> list[Event]:
        """Remove and return all queued events, oldest first."""
        events = list(self._queue)
        self._queue.clear()
        return events

    def pending(self) -> int:
        return len(self._queue)
