"""Initial schema: kanban loops, cards, transition ledger, parameter history.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

STAGE_VALUES = "('created', 'triggered', 'ordered', 'in_transit', 'received', 'restocked')"


def create_immutability_triggers() -> None:
    """Create immutability triggers for the append-only tables.

    Call this function from any migration that uses batch mode on
    card_stage_transition or kanban_parameter_history, as batch mode drops
    and recreates tables which silently destroys triggers.
    """
    for table in ("card_stage_transition", "kanban_parameter_history"):
        op.execute(
            f"CREATE TRIGGER IF NOT EXISTS no_update_{table} "
            f"BEFORE UPDATE ON {table} "
            f"BEGIN SELECT RAISE(ABORT, '{table} is immutable'); END;"
        )
        op.execute(
            f"CREATE TRIGGER IF NOT EXISTS no_delete_{table} "
            f"BEFORE DELETE ON {table} "
            f"BEGIN SELECT RAISE(ABORT, '{table} is immutable'); END;"
        )


def upgrade() -> None:
    # --- kanban_loop ---
    op.create_table(
        "kanban_loop",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("part_id", sa.String(), nullable=False),
        sa.Column("facility_id", sa.String(), nullable=False),
        sa.Column("loop_type", sa.String(), nullable=False),
        sa.Column("card_mode", sa.String(), nullable=False, server_default="single"),
        sa.Column("order_quantity", sa.Integer(), nullable=False),
        sa.Column("number_of_cards", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("primary_supplier_id", sa.String(), nullable=True),
        sa.Column("source_facility_id", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "loop_type IN ('procurement', 'production', 'transfer')",
            name="ck_kanban_loop_type",
        ),
        sa.CheckConstraint("card_mode IN ('single', 'multi')", name="ck_kanban_loop_mode"),
        sa.CheckConstraint("order_quantity > 0", name="ck_kanban_loop_order_qty"),
        sa.CheckConstraint("number_of_cards >= 1", name="ck_kanban_loop_cards"),
    )
    op.create_index("ix_kanban_loop_tenant", "kanban_loop", ["tenant_id"])
    op.create_index("ix_kanban_loop_part", "kanban_loop", ["part_id"])

    # --- kanban_card ---
    op.create_table(
        "kanban_card",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("loop_id", sa.String(), sa.ForeignKey("kanban_loop.id"), nullable=False),
        sa.Column("card_number", sa.Integer(), nullable=False),
        sa.Column("current_stage", sa.String(), nullable=False, server_default="created"),
        sa.Column("current_stage_entered_at", sa.String(), nullable=False),
        sa.Column("linked_purchase_order_id", sa.String(), nullable=True),
        sa.Column("linked_work_order_id", sa.String(), nullable=True),
        sa.Column("linked_transfer_order_id", sa.String(), nullable=True),
        sa.Column("completed_cycles", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.Column("updated_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            f"current_stage IN {STAGE_VALUES}", name="ck_kanban_card_stage"
        ),
    )
    op.create_index("ix_kanban_card_tenant", "kanban_card", ["tenant_id"])
    op.create_index("ix_kanban_card_loop", "kanban_card", ["loop_id"])
    op.create_index(
        "ix_kanban_card_queue",
        "kanban_card",
        ["tenant_id", "current_stage", "is_active"],
    )
    op.create_index(
        "ux_kanban_card_loop_number_active",
        "kanban_card",
        ["loop_id", "card_number"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
    )

    # --- card_stage_transition ---
    op.create_table(
        "card_stage_transition",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("card_id", sa.String(), sa.ForeignKey("kanban_card.id"), nullable=False),
        sa.Column("loop_id", sa.String(), sa.ForeignKey("kanban_loop.id"), nullable=False),
        sa.Column("cycle_number", sa.Integer(), nullable=False),
        sa.Column("from_stage", sa.String(), nullable=True),
        sa.Column("to_stage", sa.String(), nullable=False),
        sa.Column("transitioned_at", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("method", sa.String(), nullable=False, server_default="manual"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("linked_order_id", sa.String(), nullable=True),
        sa.Column("linked_order_type", sa.String(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "tenant_id",
            "card_id",
            "idempotency_key",
            name="uq_card_transition_idempotency",
        ),
        sa.CheckConstraint(f"to_stage IN {STAGE_VALUES}", name="ck_card_transition_to"),
        sa.CheckConstraint(
            "method IN ('manual', 'qr_scan', 'system')",
            name="ck_card_transition_method",
        ),
    )
    op.create_index("ix_card_transition_card", "card_stage_transition", ["card_id"])
    op.create_index("ix_card_transition_loop", "card_stage_transition", ["loop_id"])
    op.create_index(
        "ix_card_transition_time", "card_stage_transition", ["transitioned_at"]
    )
    op.create_index(
        "ix_card_transition_cycle",
        "card_stage_transition",
        ["card_id", "cycle_number"],
    )

    # --- kanban_parameter_history ---
    op.create_table(
        "kanban_parameter_history",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("loop_id", sa.String(), sa.ForeignKey("kanban_loop.id"), nullable=False),
        sa.Column("change_type", sa.String(), nullable=False),
        sa.Column("previous_card_mode", sa.String(), nullable=True),
        sa.Column("new_card_mode", sa.String(), nullable=True),
        sa.Column("previous_number_of_cards", sa.Integer(), nullable=True),
        sa.Column("new_number_of_cards", sa.Integer(), nullable=True),
        sa.Column("previous_order_quantity", sa.Integer(), nullable=True),
        sa.Column("new_order_quantity", sa.Integer(), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("changed_by_user_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_parameter_history_loop",
        "kanban_parameter_history",
        ["loop_id", "created_at"],
    )

    # --- Immutability triggers ---
    create_immutability_triggers()


def downgrade() -> None:
    raise NotImplementedError(
        "Downgrade not supported. Use backup-and-restore for rollback."
    )
