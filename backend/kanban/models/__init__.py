"""Database models package."""

from kanban.models.base import Base, new_id, register_engine_events
from kanban.models.kanban import (
    CardTransitionModel,
    KanbanCardModel,
    KanbanLoopModel,
    ParameterHistoryModel,
)

__all__ = [
    "Base",
    "CardTransitionModel",
    "KanbanCardModel",
    "KanbanLoopModel",
    "ParameterHistoryModel",
    "new_id",
    "register_engine_events",
]
