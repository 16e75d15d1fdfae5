"""Lifecycle event value objects published after a transition commits.

Each event is a frozen dataclass tagged with a dotted ``type`` string.
``to_dict()`` produces the wire shape (enum members flattened to values,
None fields dropped).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, ClassVar


def _wire_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _wire_value(v) for k, v in value.items()}
    return value


@dataclass(frozen=True)
class LifecycleEvent:
    """Base class. Subclasses set ``type``."""

    type: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        payload = {k: _wire_value(v) for k, v in asdict(self).items() if v is not None}
        return {"type": self.type, **payload}


@dataclass(frozen=True)
class TransitionEvent(LifecycleEvent):
    type: ClassVar[str] = "lifecycle.transition"

    event_id: str
    tenant_id: str
    card_id: str
    loop_id: str
    from_stage: str
    to_stage: str
    method: str
    cycle_number: int
    timestamp: str
    user_id: str | None = None
    stage_duration_seconds: int | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class QueueEntryEvent(LifecycleEvent):
    """A triggered card entered the order/production/transfer queue."""

    type: ClassVar[str] = "lifecycle.queue_entry"

    tenant_id: str
    card_id: str
    loop_id: str
    loop_type: str
    part_id: str
    facility_id: str
    quantity: int
    timestamp: str


@dataclass(frozen=True)
class OrderLinkedEvent(LifecycleEvent):
    type: ClassVar[str] = "lifecycle.order_linked"

    tenant_id: str
    card_id: str
    loop_id: str
    order_id: str
    order_type: str
    timestamp: str


@dataclass(frozen=True)
class CycleCompleteEvent(LifecycleEvent):
    type: ClassVar[str] = "lifecycle.cycle_complete"

    tenant_id: str
    card_id: str
    loop_id: str
    cycle_number: int
    total_cycle_duration_seconds: int
    timestamp: str


@dataclass(frozen=True)
class ScanConflictEvent(LifecycleEvent):
    type: ClassVar[str] = "scan.conflict_detected"

    tenant_id: str
    card_id: str
    current_stage: str
    resolution: str
    scanned_at: str
    timestamp: str
    scanned_by_user_id: str | None = None
    idempotency_key: str | None = None
