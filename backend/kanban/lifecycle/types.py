"""Kanban lifecycle domain types shared across the orchestrator.

Frozen dataclasses for value objects and str-Enums for the fixed
vocabularies (stages, loop types, methods, roles).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from kanban.models.kanban import CardTransitionModel, KanbanCardModel


class CardStage(str, Enum):
    """The six stages of a kanban card's operating cycle."""

    CREATED = "created"
    TRIGGERED = "triggered"
    ORDERED = "ordered"
    IN_TRANSIT = "in_transit"
    RECEIVED = "received"
    RESTOCKED = "restocked"


class LoopType(str, Enum):
    """How a loop replenishes: external PO, internal WO, or inter-facility TO."""

    PROCUREMENT = "procurement"
    PRODUCTION = "production"
    TRANSFER = "transfer"


class CardMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class TransitionMethod(str, Enum):
    """How a transition was initiated."""

    MANUAL = "manual"
    QR_SCAN = "qr_scan"
    SYSTEM = "system"


class UserRole(str, Enum):
    TENANT_ADMIN = "tenant_admin"
    INVENTORY_MANAGER = "inventory_manager"
    PROCUREMENT_MANAGER = "procurement_manager"
    RECEIVING_MANAGER = "receiving_manager"
    ECOMMERCE_DIRECTOR = "ecommerce_director"
    SALESPERSON = "salesperson"
    EXECUTIVE = "executive"


# Bypasses the per-edge role check.
OPERATOR_ROLE = UserRole.TENANT_ADMIN


class LinkedOrderType(str, Enum):
    PURCHASE_ORDER = "purchase_order"
    WORK_ORDER = "work_order"
    TRANSFER_ORDER = "transfer_order"


class ScanConflictResolution(str, Enum):
    """Why a scan could not trigger a card."""

    OK = "ok"
    ALREADY_TRIGGERED = "already_triggered"
    STAGE_ADVANCED = "stage_advanced"
    CARD_INACTIVE = "card_inactive"


QUEUE_NAMES: dict[LoopType, str] = {
    LoopType.PROCUREMENT: "Order Queue",
    LoopType.PRODUCTION: "Production Queue",
    LoopType.TRANSFER: "Transfer Queue",
}


@dataclass(frozen=True)
class TransitionRequest:
    """Input to CardLifecycleManager.transition_card()."""

    card_id: str
    tenant_id: str
    to_stage: CardStage
    method: TransitionMethod = TransitionMethod.MANUAL
    user_id: str | None = None
    user_role: UserRole | str | None = None
    notes: str | None = None
    metadata: dict[str, Any] | None = None
    idempotency_key: str | None = None
    linked_order_id: str | None = None
    linked_order_type: LinkedOrderType | None = None
    quantity: int | None = None


@dataclass(frozen=True)
class CardSnapshot:
    """Read-only projection of a card row."""

    id: str
    tenant_id: str
    loop_id: str
    card_number: int
    current_stage: CardStage
    current_stage_entered_at: str
    is_active: bool
    completed_cycles: int
    linked_purchase_order_id: str | None = None
    linked_work_order_id: str | None = None
    linked_transfer_order_id: str | None = None

    @classmethod
    def from_model(cls, card: KanbanCardModel) -> CardSnapshot:
        return cls(
            id=card.id,
            tenant_id=card.tenant_id,
            loop_id=card.loop_id,
            card_number=card.card_number,
            current_stage=CardStage(card.current_stage),
            current_stage_entered_at=card.current_stage_entered_at,
            is_active=card.is_active,
            completed_cycles=card.completed_cycles,
            linked_purchase_order_id=card.linked_purchase_order_id,
            linked_work_order_id=card.linked_work_order_id,
            linked_transfer_order_id=card.linked_transfer_order_id,
        )


@dataclass(frozen=True)
class TransitionRecord:
    """Read-only projection of an immutable transition ledger row."""

    id: str
    tenant_id: str
    card_id: str
    loop_id: str
    cycle_number: int
    from_stage: CardStage | None
    to_stage: CardStage
    transitioned_at: str
    user_id: str | None
    method: TransitionMethod
    notes: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    idempotency_key: str | None = None
    linked_order_id: str | None = None
    linked_order_type: LinkedOrderType | None = None

    @classmethod
    def from_model(cls, row: CardTransitionModel) -> TransitionRecord:
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            card_id=row.card_id,
            loop_id=row.loop_id,
            cycle_number=row.cycle_number,
            from_stage=CardStage(row.from_stage) if row.from_stage else None,
            to_stage=CardStage(row.to_stage),
            transitioned_at=row.transitioned_at,
            user_id=row.user_id,
            method=TransitionMethod(row.method),
            notes=row.notes,
            metadata=dict(row.meta or {}),
            idempotency_key=row.idempotency_key,
            linked_order_id=row.linked_order_id,
            linked_order_type=(
                LinkedOrderType(row.linked_order_type)
                if row.linked_order_type
                else None
            ),
        )


@dataclass(frozen=True)
class TransitionResult:
    """Result of transition_card().

    ``replayed`` is True when an idempotency key matched a persisted
    transition; in that case nothing was written and ``event_id`` is None.
    """

    card: CardSnapshot
    transition: TransitionRecord
    event_id: str | None
    replayed: bool = False


@dataclass(frozen=True)
class ScanLocation:
    lat: float | None = None
    lng: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class ScanTriggerResult:
    """Result of a successful QR scan trigger."""

    card: CardSnapshot
    loop_type: LoopType
    part_id: str
    message: str


@dataclass(frozen=True)
class ScanReplayItem:
    """An offline-captured scan waiting to be replayed."""

    card_id: str
    idempotency_key: str
    scanned_at: str
    location: ScanLocation | None = None


@dataclass(frozen=True)
class ScanReplayResult:
    """Outcome of replaying one offline scan. Always tagged was_replay."""

    card_id: str
    idempotency_key: str
    success: bool
    card: CardSnapshot | None = None
    loop_type: LoopType | None = None
    part_id: str | None = None
    message: str | None = None
    error: str | None = None
    error_code: str | None = None
    was_replay: bool = True
