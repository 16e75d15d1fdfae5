"""Kanban loop quantity accounting package."""

from kanban.loops.quantity import QuantityAccountant, inferred_quantity, is_counting_stage
from kanban.loops.types import (
    LoopCardSummary,
    LoopQuantity,
    LoopSnapshot,
    ModeSwitchResult,
    ProvisionedLoop,
    TriggeredConsolidation,
)

__all__ = [
    "LoopCardSummary",
    "LoopQuantity",
    "LoopSnapshot",
    "ModeSwitchResult",
    "ProvisionedLoop",
    "QuantityAccountant",
    "TriggeredConsolidation",
    "inferred_quantity",
    "is_counting_stage",
]
