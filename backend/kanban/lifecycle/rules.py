"""Card transition rules -- static rule table and pure predicates.

No I/O, no database. The matrix is the source of truth for the kanban
flow; each edge additionally carries who/how/for-which-loops it may be
taken. Predicates accept enum members or raw strings and return False
for anything they do not recognise.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from kanban.lifecycle.types import (
    OPERATOR_ROLE,
    CardStage,
    LinkedOrderType,
    LoopType,
    TransitionMethod,
    UserRole,
)

_E = TypeVar("_E", bound=Enum)

_ALL_LOOP_TYPES = frozenset(LoopType)
_MANUAL_OR_SYSTEM = frozenset({TransitionMethod.MANUAL, TransitionMethod.SYSTEM})

TRANSITION_MATRIX: dict[CardStage, frozenset[CardStage]] = {
    CardStage.CREATED: frozenset({CardStage.TRIGGERED}),
    CardStage.TRIGGERED: frozenset({CardStage.ORDERED}),
    # in_transit is skipped for in-house production
    CardStage.ORDERED: frozenset({CardStage.IN_TRANSIT, CardStage.RECEIVED}),
    CardStage.IN_TRANSIT: frozenset({CardStage.RECEIVED}),
    CardStage.RECEIVED: frozenset({CardStage.RESTOCKED}),
    # new cycle
    CardStage.RESTOCKED: frozenset({CardStage.TRIGGERED}),
}


@dataclass(frozen=True)
class TransitionRule:
    """Authorization policy for one edge of the matrix."""

    from_stage: CardStage
    to_stage: CardStage
    allowed_roles: frozenset[UserRole]
    allowed_loop_types: frozenset[LoopType]
    allowed_methods: frozenset[TransitionMethod]
    description: str
    requires_linked_order: bool = False
    linked_order_types: frozenset[LinkedOrderType] = frozenset()


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        from_stage=CardStage.CREATED,
        to_stage=CardStage.TRIGGERED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.PROCUREMENT_MANAGER,
                UserRole.RECEIVING_MANAGER,
            }
        ),
        allowed_loop_types=_ALL_LOOP_TYPES,
        allowed_methods=_MANUAL_OR_SYSTEM | {TransitionMethod.QR_SCAN},
        description="Scan or manually trigger replenishment signal",
    ),
    TransitionRule(
        from_stage=CardStage.TRIGGERED,
        to_stage=CardStage.ORDERED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.PROCUREMENT_MANAGER,
            }
        ),
        allowed_loop_types=_ALL_LOOP_TYPES,
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Link to PO/WO/TO and advance to ordered",
        requires_linked_order=True,
        linked_order_types=frozenset(LinkedOrderType),
    ),
    TransitionRule(
        from_stage=CardStage.ORDERED,
        to_stage=CardStage.IN_TRANSIT,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.PROCUREMENT_MANAGER,
                UserRole.RECEIVING_MANAGER,
            }
        ),
        allowed_loop_types=frozenset({LoopType.PROCUREMENT, LoopType.TRANSFER}),
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Mark shipment as in transit",
    ),
    TransitionRule(
        from_stage=CardStage.ORDERED,
        to_stage=CardStage.RECEIVED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.RECEIVING_MANAGER,
            }
        ),
        allowed_loop_types=frozenset({LoopType.PRODUCTION}),
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Direct receive for production loops",
    ),
    TransitionRule(
        from_stage=CardStage.IN_TRANSIT,
        to_stage=CardStage.RECEIVED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.RECEIVING_MANAGER,
            }
        ),
        allowed_loop_types=frozenset({LoopType.PROCUREMENT, LoopType.TRANSFER}),
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Receive goods at destination facility",
    ),
    TransitionRule(
        from_stage=CardStage.RECEIVED,
        to_stage=CardStage.RESTOCKED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
                UserRole.RECEIVING_MANAGER,
            }
        ),
        allowed_loop_types=_ALL_LOOP_TYPES,
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Confirm restock at storage location",
    ),
    TransitionRule(
        from_stage=CardStage.RESTOCKED,
        to_stage=CardStage.TRIGGERED,
        allowed_roles=frozenset(
            {
                UserRole.TENANT_ADMIN,
                UserRole.INVENTORY_MANAGER,
            }
        ),
        allowed_loop_types=_ALL_LOOP_TYPES,
        allowed_methods=_MANUAL_OR_SYSTEM,
        description="Start a new replenishment cycle",
    ),
)

_RULES_BY_EDGE: dict[tuple[CardStage, CardStage], TransitionRule] = {
    (rule.from_stage, rule.to_stage): rule for rule in TRANSITION_RULES
}


def coerce_enum(enum_cls: type[_E], value: object) -> _E | None:
    """Map a raw string or enum member onto enum_cls, None if unknown."""
    try:
        return enum_cls(value)
    except ValueError:
        return None


def find_rule(from_stage: CardStage | str, to_stage: CardStage | str) -> TransitionRule | None:
    """Look up the rule for an edge. None if the edge does not exist."""
    src = coerce_enum(CardStage, from_stage)
    dst = coerce_enum(CardStage, to_stage)
    if src is None or dst is None:
        return None
    return _RULES_BY_EDGE.get((src, dst))


def allowed_targets(from_stage: CardStage | str) -> frozenset[CardStage]:
    src = coerce_enum(CardStage, from_stage)
    if src is None:
        return frozenset()
    return TRANSITION_MATRIX.get(src, frozenset())


def is_valid_transition(from_stage: CardStage | str, to_stage: CardStage | str) -> bool:
    """Check if a stage transition is allowed by the kanban flow."""
    dst = coerce_enum(CardStage, to_stage)
    return dst is not None and dst in allowed_targets(from_stage)


def is_role_allowed(
    from_stage: CardStage | str,
    to_stage: CardStage | str,
    role: UserRole | str,
) -> bool:
    """Operator role always passes; otherwise the edge's role set decides."""
    member = coerce_enum(UserRole, role)
    if member is OPERATOR_ROLE:
        return True
    rule = find_rule(from_stage, to_stage)
    return rule is not None and member in rule.allowed_roles


def is_loop_type_allowed(
    from_stage: CardStage | str,
    to_stage: CardStage | str,
    loop_type: LoopType | str,
) -> bool:
    rule = find_rule(from_stage, to_stage)
    return rule is not None and coerce_enum(LoopType, loop_type) in rule.allowed_loop_types


def is_method_allowed(
    from_stage: CardStage | str,
    to_stage: CardStage | str,
    method: TransitionMethod | str,
) -> bool:
    rule = find_rule(from_stage, to_stage)
    return (
        rule is not None
        and coerce_enum(TransitionMethod, method) in rule.allowed_methods
    )
