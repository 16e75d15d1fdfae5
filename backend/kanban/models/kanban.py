"""Kanban database models.

Tables: kanban_loop, kanban_card, card_stage_transition,
kanban_parameter_history
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    DDL,
    JSON,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from kanban.models.base import Base, new_id

STAGE_VALUES = "('created', 'triggered', 'ordered', 'in_transit', 'received', 'restocked')"


class KanbanLoopModel(Base):
    """Replenishment policy for one part at one facility."""

    __tablename__ = "kanban_loop"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    part_id: Mapped[str] = mapped_column(String, nullable=False)
    facility_id: Mapped[str] = mapped_column(String, nullable=False)
    loop_type: Mapped[str] = mapped_column(
        String,
        CheckConstraint(
            "loop_type IN ('procurement', 'production', 'transfer')",
            name="ck_kanban_loop_type",
        ),
        nullable=False,
    )
    card_mode: Mapped[str] = mapped_column(
        String,
        CheckConstraint("card_mode IN ('single', 'multi')", name="ck_kanban_loop_mode"),
        nullable=False,
        server_default="single",
    )
    order_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    number_of_cards: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default="1"
    )
    primary_supplier_id: Mapped[str | None] = mapped_column(String, nullable=True)
    source_facility_id: Mapped[str | None] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("1")
    )
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        CheckConstraint("order_quantity > 0", name="ck_kanban_loop_order_qty"),
        CheckConstraint("number_of_cards >= 1", name="ck_kanban_loop_cards"),
        Index("ix_kanban_loop_tenant", "tenant_id"),
        Index("ix_kanban_loop_part", "part_id"),
    )


class KanbanCardModel(Base):
    """Mutable card state. Stage fields change only via the orchestrator."""

    __tablename__ = "kanban_card"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    loop_id: Mapped[str] = mapped_column(
        String, ForeignKey("kanban_loop.id"), nullable=False
    )
    card_number: Mapped[int] = mapped_column(Integer, nullable=False)
    current_stage: Mapped[str] = mapped_column(
        String,
        CheckConstraint(f"current_stage IN {STAGE_VALUES}", name="ck_kanban_card_stage"),
        nullable=False,
        server_default="created",
    )
    current_stage_entered_at: Mapped[str] = mapped_column(String, nullable=False)
    linked_purchase_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_work_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_transfer_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_cycles: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("1")
    )
    version: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    created_at: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (
        Index("ix_kanban_card_tenant", "tenant_id"),
        Index("ix_kanban_card_loop", "loop_id"),
        Index("ix_kanban_card_queue", "tenant_id", "current_stage", "is_active"),
        # Active cards are numbered 1..N; deactivated ones keep their number.
        Index(
            "ux_kanban_card_loop_number_active",
            "loop_id",
            "card_number",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class CardTransitionModel(Base):
    """Immutable append-only ledger of accepted stage transitions."""

    __tablename__ = "card_stage_transition"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    card_id: Mapped[str] = mapped_column(
        String, ForeignKey("kanban_card.id"), nullable=False
    )
    loop_id: Mapped[str] = mapped_column(
        String, ForeignKey("kanban_loop.id"), nullable=False
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    from_stage: Mapped[str | None] = mapped_column(String, nullable=True)
    to_stage: Mapped[str] = mapped_column(
        String,
        CheckConstraint(f"to_stage IN {STAGE_VALUES}", name="ck_card_transition_to"),
        nullable=False,
    )
    transitioned_at: Mapped[str] = mapped_column(String, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    method: Mapped[str] = mapped_column(
        String,
        CheckConstraint(
            "method IN ('manual', 'qr_scan', 'system')",
            name="ck_card_transition_method",
        ),
        nullable=False,
        server_default="manual",
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    idempotency_key: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_order_id: Mapped[str | None] = mapped_column(String, nullable=True)
    linked_order_type: Mapped[str | None] = mapped_column(String, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "card_id",
            "idempotency_key",
            name="uq_card_transition_idempotency",
        ),
        Index("ix_card_transition_card", "card_id"),
        Index("ix_card_transition_loop", "loop_id"),
        Index("ix_card_transition_time", "transitioned_at"),
        Index("ix_card_transition_cycle", "card_id", "cycle_number"),
    )


class ParameterHistoryModel(Base):
    """Append-only record of loop parameter changes."""

    __tablename__ = "kanban_parameter_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, nullable=False)
    loop_id: Mapped[str] = mapped_column(
        String, ForeignKey("kanban_loop.id"), nullable=False
    )
    change_type: Mapped[str] = mapped_column(String, nullable=False)
    previous_card_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    new_card_mode: Mapped[str | None] = mapped_column(String, nullable=True)
    previous_number_of_cards: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_number_of_cards: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_order_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    new_order_quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    changed_by_user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[str] = mapped_column(String, nullable=False)

    __table_args__ = (Index("ix_parameter_history_loop", "loop_id", "created_at"),)


IMMUTABLE_TABLES = ("card_stage_transition", "kanban_parameter_history")


def immutability_trigger_statements(table: str) -> list[str]:
    """SQLite triggers that abort any UPDATE or DELETE on an append-only table."""
    return [
        f"CREATE TRIGGER IF NOT EXISTS no_update_{table} "
        f"BEFORE UPDATE ON {table} "
        f"BEGIN SELECT RAISE(ABORT, '{table} is immutable'); END;",
        f"CREATE TRIGGER IF NOT EXISTS no_delete_{table} "
        f"BEFORE DELETE ON {table} "
        f"BEGIN SELECT RAISE(ABORT, '{table} is immutable'); END;",
    ]


# Tables created via metadata.create_all() (tests, init-db) get the same
# triggers the Alembic migration installs.
for _name in IMMUTABLE_TABLES:
    for _statement in immutability_trigger_statements(_name):
        event.listen(
            Base.metadata.tables[_name],
            "after_create",
            DDL(_statement).execute_if(dialect="sqlite"),
        )
