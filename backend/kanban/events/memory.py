"""InMemoryEventBus -- bounded asyncio.Queue outbound channel.

Publishing never blocks: a full channel raises EventBusFullError
immediately. Consumers drain the channel with ``subscribe()``, which ends
once the bus is closed and every queued event has been yielded. The most
recent accepted events are also kept in ``published`` for inspection.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from typing import Final

import structlog

from kanban.events.bus import EventBusClosedError, EventBusFullError
from kanban.events.types import LifecycleEvent

log = structlog.get_logger()

_CLOSED: Final = object()


class InMemoryEventBus:
    """EventBus backed by a bounded in-process queue.

    Args:
        maxsize: Events the channel holds before publish is rejected.
        history_size: Accepted events retained in ``published``.
    """

    def __init__(self, maxsize: int = 10_000, history_size: int = 1_000) -> None:
        self._maxsize = maxsize
        # Unbounded so the close sentinel always fits; publish enforces maxsize.
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._pending = 0
        self._closed = False
        self._history: deque[LifecycleEvent] = deque(maxlen=history_size)

    async def publish(self, event: LifecycleEvent) -> None:
        if self._closed:
            raise EventBusClosedError("event bus is closed")
        if self._pending >= self._maxsize:
            raise EventBusFullError(
                f"outbound channel full ({self._maxsize}); dropped {event.type}"
            )
        self._queue.put_nowait(event)
        self._pending += 1
        self._history.append(event)
        log.debug("event_published", event_type=event.type)

    @property
    def published(self) -> list[LifecycleEvent]:
        """The most recent accepted events, oldest first."""
        return list(self._history)

    def of_type(self, event_type: str) -> list[LifecycleEvent]:
        """Retained events with the given ``type`` tag, in publish order."""
        return [e for e in self._history if e.type == event_type]

    @property
    def pending(self) -> int:
        return self._pending

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def subscribe(self) -> AsyncIterator[LifecycleEvent]:
        """Yield events as they are published until closed and drained."""
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                # Leave the sentinel for any other subscriber.
                self._queue.put_nowait(_CLOSED)
                return
            self._pending -= 1
            yield item  # type: ignore[misc]
