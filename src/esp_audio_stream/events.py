"""Typed event channels for component notifications.

Each component owns its channels (connection status, received data, amplitude
and so on). Consumers subscribe explicitly and keep the returned handle to
unsubscribe; there is no process-wide notification bus.
"""

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Synchronous observer channel.

    Subscribers are called in subscription order on the emitting thread.
    A failing subscriber is logged and skipped so one consumer cannot break
    delivery to the others (or the component emitting the event).

    Example:
        >>> amplitude = EventChannel("amplitude")
        >>> unsubscribe = amplitude.subscribe(print)
        >>> amplitude.emit(0.25)
        0.25
        >>> unsubscribe()
    """

    def __init__(self, name: str):
        self.name = name
        self._subscribers: List[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes this subscription
        """
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[T], None]):
        """Remove a callback (no-op if it is not subscribed)."""
        try:
            self._subscribers.remove(callback)
        except ValueError:
            pass

    def emit(self, event: T):
        """Deliver an event to every subscriber."""
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber of '{self.name}' failed: {e}")

    def clear(self):
        """Remove all subscribers."""
        self._subscribers.clear()

    def __len__(self) -> int:
        return len(self._subscribers)
