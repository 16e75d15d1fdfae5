"""Lifecycle event bus package."""

from kanban.events.bus import (
    EventBus,
    EventBusClosedError,
    EventBusError,
    EventBusFullError,
)
from kanban.events.memory import InMemoryEventBus
from kanban.events.types import (
    CycleCompleteEvent,
    LifecycleEvent,
    OrderLinkedEvent,
    QueueEntryEvent,
    ScanConflictEvent,
    TransitionEvent,
)

__all__ = [
    "CycleCompleteEvent",
    "EventBus",
    "EventBusClosedError",
    "EventBusError",
    "EventBusFullError",
    "InMemoryEventBus",
    "LifecycleEvent",
    "OrderLinkedEvent",
    "QueueEntryEvent",
    "ScanConflictEvent",
    "TransitionEvent",
]
