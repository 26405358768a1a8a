"""
In-process event bus for tagdb.

The EventBus carries MutationEvents from the Node Store to its listeners
(the Subscription Service, the Automation Service, tests). It has no
persistence and delivers each event at most once to each live listener.

Invariants:
    - Events are delivered in emission order, which is commit order
    - An emit issued from inside a listener is queued and delivered after
      the current event has reached every listener
    - A failing listener never prevents delivery to the others
    - current_event is the event being dispatched; the store stamps each
      event emitted meanwhile with that event's depth + 1

How to change safely:
    - Keep delivery synchronous; callers rely on "write applied before
      dependent callbacks fire"
    - Test reentrant emits whenever dispatch changes
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .types import EventFilter, MutationEvent

logger = logging.getLogger(__name__)

Listener = Callable[[MutationEvent], Any]

# Listener count above which a possible leak is reported
LISTENER_WARNING_THRESHOLD = 50


@dataclass
class _Registration:
    listener_id: int
    listener: Listener
    event_filter: EventFilter | None


class EventBus:
    """Synchronous publish/subscribe channel for mutation events.

    Thread safety:
        The Node Store emits while holding its write lock, so emits are
        serialized. Subscribing and unsubscribing is safe from any thread.

    Example:
        >>> bus = EventBus()
        >>> unsubscribe = bus.subscribe(lambda event: print(event.kind))
        >>> bus.emit(event)
        >>> unsubscribe()
    """

    def __init__(self, metrics: Any | None = None) -> None:
        """Initialize the bus.

        Args:
            metrics: Optional EngineMetrics for the event counter
        """
        self.metrics = metrics
        self._listeners: dict[int, _Registration] = {}
        self._next_id = 0
        self._lock = threading.RLock()
        self._pending: deque[MutationEvent] = deque()
        self._dispatching = False
        self._current: MutationEvent | None = None
        self._emitted_count = 0
        self._listener_error_count = 0
        self._last_sequence = 0

    def subscribe(
        self,
        listener: Listener,
        event_filter: EventFilter | None = None,
    ) -> Callable[[], None]:
        """Register a listener.

        Args:
            listener: Callable receiving each matching event
            event_filter: Optional filter narrowing delivered events

        Returns:
            A callable that removes the listener
        """
        with self._lock:
            self._next_id += 1
            listener_id = self._next_id
            self._listeners[listener_id] = _Registration(listener_id, listener, event_filter)
            count = len(self._listeners)

        if count > LISTENER_WARNING_THRESHOLD:
            logger.warning(
                "Event bus has many listeners, possible leak",
                extra={"listener_count": count},
            )

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(listener_id, None)

        return unsubscribe

    def emit(self, event: MutationEvent) -> None:
        """Deliver an event to every matching listener.

        If called while another event is being dispatched on this thread
        (a listener wrote to the store), the event is queued and delivered
        once the current one has finished.

        Args:
            event: The committed mutation event
        """
        with self._lock:
            self._pending.append(event)
            self._emitted_count += 1
            if self.metrics is not None:
                self.metrics.record_event(event.kind.value)
            if self._dispatching:
                return
            self._dispatching = True

        try:
            while True:
                with self._lock:
                    if not self._pending:
                        break
                    current = self._pending.popleft()
                    registrations = list(self._listeners.values())
                    self._current = current
                self._dispatch(current, registrations)
        finally:
            with self._lock:
                self._dispatching = False
                self._current = None
                self._pending.clear()

    def _dispatch(self, event: MutationEvent, registrations: list[_Registration]) -> None:
        if event.sequence <= self._last_sequence:
            logger.warning(
                "Out-of-order event sequence",
                extra={"sequence": event.sequence, "last_sequence": self._last_sequence},
            )
        self._last_sequence = max(self._last_sequence, event.sequence)

        for registration in registrations:
            # Skip listeners removed by an earlier listener of this event
            if registration.listener_id not in self._listeners:
                continue
            if registration.event_filter and not registration.event_filter.matches(event):
                continue
            try:
                registration.listener(event)
            except Exception as e:
                self._listener_error_count += 1
                logger.error(
                    f"Event listener failed: {e}",
                    exc_info=True,
                    extra={"sequence": event.sequence, "kind": event.kind.value},
                )

    @property
    def current_event(self) -> MutationEvent | None:
        """The event being dispatched, or None outside of dispatch."""
        return self._current

    def listener_count(self) -> int:
        """Number of registered listeners."""
        with self._lock:
            return len(self._listeners)

    def clear(self) -> None:
        """Remove every listener."""
        with self._lock:
            self._listeners.clear()

    @property
    def stats(self) -> dict[str, Any]:
        """Get bus statistics."""
        return {
            "listener_count": self.listener_count(),
            "emitted_count": self._emitted_count,
            "listener_error_count": self._listener_error_count,
            "last_sequence": self._last_sequence,
        }
