"""Kanban card lifecycle package."""

from kanban.lifecycle.dedupe import DedupeDecision, DedupeStatus, ScanDedupeManager
from kanban.lifecycle.errors import ErrorCode, LifecycleError
from kanban.lifecycle.history import LifecycleHistory, LoopVelocity, StageVelocity
from kanban.lifecycle.manager import CardLifecycleManager
from kanban.lifecycle.rules import (
    TRANSITION_MATRIX,
    TRANSITION_RULES,
    TransitionRule,
    is_loop_type_allowed,
    is_method_allowed,
    is_role_allowed,
    is_valid_transition,
)
from kanban.lifecycle.scan import ScanHandler
from kanban.lifecycle.types import (
    CardSnapshot,
    CardStage,
    LoopType,
    ScanLocation,
    ScanReplayItem,
    ScanReplayResult,
    ScanTriggerResult,
    TransitionMethod,
    TransitionRecord,
    TransitionRequest,
    TransitionResult,
    UserRole,
)

__all__ = [
    "TRANSITION_MATRIX",
    "TRANSITION_RULES",
    "CardLifecycleManager",
    "CardSnapshot",
    "CardStage",
    "DedupeDecision",
    "DedupeStatus",
    "ErrorCode",
    "LifecycleError",
    "LifecycleHistory",
    "LoopType",
    "LoopVelocity",
    "ScanDedupeManager",
    "ScanHandler",
    "ScanLocation",
    "ScanReplayItem",
    "ScanReplayResult",
    "ScanTriggerResult",
    "StageVelocity",
    "TransitionMethod",
    "TransitionRecord",
    "TransitionRequest",
    "TransitionResult",
    "TransitionRule",
    "UserRole",
    "is_loop_type_allowed",
    "is_method_allowed",
    "is_role_allowed",
    "is_valid_transition",
]
