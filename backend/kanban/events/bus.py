"""EventBus protocol -- outbound interface for lifecycle events.

Delivery and retry semantics belong to the bus implementation, never to
the lifecycle orchestrator, which only attempts a publish and logs any
failure.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from kanban.events.types import LifecycleEvent


class EventBusError(Exception):
    """Base exception for event bus failures."""


class EventBusFullError(EventBusError):
    """The outbound channel is at capacity; the event was not accepted."""


class EventBusClosedError(EventBusError):
    """publish() called after close()."""


@runtime_checkable
class EventBus(Protocol):
    """Async publish-only interface consumed by the orchestrator."""

    async def publish(self, event: LifecycleEvent) -> None:
        """Hand an event to the bus. May raise EventBusError."""
        ...
