"""
Event module for tagdb.

This module provides the in-process mutation event channel:
- MutationEvent / MutationKind: immutable description of one committed write
- EventFilter: listener-side narrowing of delivered events
- EventBus: synchronous, reentrancy-safe publish/subscribe

Invariants:
    - One event per mutating store operation
    - Delivery order equals commit (sequence) order
"""

from .bus import LISTENER_WARNING_THRESHOLD, EventBus, Listener
from .types import EventFilter, MutationEvent, MutationKind

__all__ = [
    "EventBus",
    "EventFilter",
    "Listener",
    "LISTENER_WARNING_THRESHOLD",
    "MutationEvent",
    "MutationKind",
]
