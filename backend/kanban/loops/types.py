"""Loop-level value objects returned by quantity accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from kanban.lifecycle.types import CardMode, CardSnapshot, CardStage, LoopType

if TYPE_CHECKING:
    from kanban.models.kanban import KanbanLoopModel


class ParameterChangeType(str, Enum):
    """Values stored in kanban_parameter_history.change_type."""

    MODE_SWITCH = "mode_switch"
    ORDER_QUANTITY = "order_quantity"


@dataclass(frozen=True)
class LoopSnapshot:
    id: str
    tenant_id: str
    part_id: str
    facility_id: str
    loop_type: LoopType
    card_mode: CardMode
    order_quantity: int
    number_of_cards: int
    primary_supplier_id: str | None = None
    source_facility_id: str | None = None
    is_active: bool = True

    @classmethod
    def from_model(cls, loop: KanbanLoopModel) -> LoopSnapshot:
        return cls(
            id=loop.id,
            tenant_id=loop.tenant_id,
            part_id=loop.part_id,
            facility_id=loop.facility_id,
            loop_type=LoopType(loop.loop_type),
            card_mode=CardMode(loop.card_mode),
            order_quantity=loop.order_quantity,
            number_of_cards=loop.number_of_cards,
            primary_supplier_id=loop.primary_supplier_id,
            source_facility_id=loop.source_facility_id,
            is_active=loop.is_active,
        )


@dataclass(frozen=True)
class ProvisionedLoop:
    loop: LoopSnapshot
    cards: list[CardSnapshot]


@dataclass(frozen=True)
class CardQuantity:
    card_id: str
    card_number: int
    stage: CardStage
    card_quantity: int
    is_counting: bool


@dataclass(frozen=True)
class LoopQuantity:
    """In-flight quantity for a loop with its per-card breakdown."""

    loop_id: str
    order_quantity_per_card: int
    total_cards: int
    total_inferred_quantity: int
    card_breakdown: list[CardQuantity] = field(default_factory=list)


@dataclass(frozen=True)
class CardsInitialized:
    loop_id: str
    cards: list[CardSnapshot]

    @property
    def cards_created(self) -> int:
        return len(self.cards)


@dataclass(frozen=True)
class ModeSwitchResult:
    loop_id: str
    previous_mode: CardMode
    new_mode: CardMode
    previous_number_of_cards: int
    new_number_of_cards: int
    cards_created: int
    cards_deactivated: int


@dataclass(frozen=True)
class OrderQuantityUpdate:
    loop_id: str
    previous_order_quantity: int
    new_order_quantity: int
    reason: str
    updated_at: str


@dataclass(frozen=True)
class LoopCardSummary:
    """Stage distribution and quantity accounting for a loop's active cards."""

    loop_id: str
    card_mode: CardMode
    number_of_cards: int
    order_quantity_per_card: int
    stage_counts: dict[str, int]
    triggered_count: int
    in_flight_count: int
    total_inferred_quantity: int
    cards: list[CardSnapshot]

    @property
    def total_cards(self) -> int:
        return len(self.cards)


@dataclass(frozen=True)
class ConsolidationCard:
    card_id: str
    card_number: int
    card_quantity: int


@dataclass(frozen=True)
class TriggeredConsolidation:
    """Triggered cards of one loop, grouped for a single PO/WO/TO."""

    loop_id: str
    loop_type: LoopType
    part_id: str
    facility_id: str
    supplier_id: str | None
    source_facility_id: str | None
    cards: list[ConsolidationCard]

    @property
    def consolidated_quantity(self) -> int:
        return sum(card.card_quantity for card in self.cards)
