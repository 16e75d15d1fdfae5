"""Tests for QuantityAccountant -- loop provisioning, card counts, projections."""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanban.lifecycle.errors import (
    CardsAlreadyExistError,
    InvalidCardCountError,
    InvalidOrderQuantityError,
    LoopConfigurationError,
    LoopNotFoundError,
    ReasonRequiredError,
)
from kanban.lifecycle.types import CardMode, CardStage, LoopType
from kanban.loops.quantity import QuantityAccountant, inferred_quantity, is_counting_stage
from kanban.models.kanban import KanbanCardModel, KanbanLoopModel, ParameterHistoryModel
from tests.factories import OTHER_TENANT_ID, TENANT_ID, make_loop, seed_loop


async def _cards(
    session_factory: async_sessionmaker[AsyncSession],
    loop_id: str,
) -> list[KanbanCardModel]:
    async with session_factory() as session:
        result = await session.execute(
            select(KanbanCardModel)
            .where(KanbanCardModel.loop_id == loop_id)
            .order_by(KanbanCardModel.card_number, KanbanCardModel.is_active)
        )
        return list(result.scalars())


async def _history(
    session_factory: async_sessionmaker[AsyncSession],
    loop_id: str,
) -> list[ParameterHistoryModel]:
    async with session_factory() as session:
        result = await session.execute(
            select(ParameterHistoryModel)
            .where(ParameterHistoryModel.loop_id == loop_id)
            .order_by(ParameterHistoryModel.id)
        )
        return list(result.scalars())


class TestInferredQuantity:
    def test_created_does_not_count(self) -> None:
        assert is_counting_stage(CardStage.CREATED) is False

    @pytest.mark.parametrize(
        "stage", [s for s in CardStage if s != CardStage.CREATED]
    )
    def test_every_other_stage_counts(self, stage: CardStage) -> None:
        assert is_counting_stage(stage) is True

    def test_sum_over_counting_cards(self) -> None:
        stages = ["created", "triggered", "in_transit", "restocked"]
        assert inferred_quantity(25, stages) == 75

    @given(
        order_quantity=st.integers(min_value=1, max_value=10_000),
        stages=st.lists(st.sampled_from(list(CardStage)), max_size=20),
    )
    def test_bounded_by_card_count(
        self, order_quantity: int, stages: list[CardStage]
    ) -> None:
        total = inferred_quantity(order_quantity, stages)
        assert 0 <= total <= order_quantity * len(stages)
        assert total % order_quantity == 0


class TestProvisionLoop:
    async def test_single_card_loop(self, accountant: QuantityAccountant) -> None:
        provisioned = await accountant.provision_loop(
            TENANT_ID, "part-001", "facility-001", LoopType.PROCUREMENT, 40
        )
        assert provisioned.loop.card_mode == CardMode.SINGLE
        assert provisioned.loop.number_of_cards == 1
        assert [c.card_number for c in provisioned.cards] == [1]
        assert provisioned.cards[0].current_stage == CardStage.CREATED

    async def test_multi_card_loop(self, accountant: QuantityAccountant) -> None:
        provisioned = await accountant.provision_loop(
            TENANT_ID,
            "part-001",
            "facility-001",
            "production",
            10,
            card_mode="multi",
            number_of_cards=3,
        )
        assert provisioned.loop.loop_type == LoopType.PRODUCTION
        assert [c.card_number for c in provisioned.cards] == [1, 2, 3]
        assert all(c.loop_id == provisioned.loop.id for c in provisioned.cards)

    async def test_transfer_requires_source(self, accountant: QuantityAccountant) -> None:
        with pytest.raises(LoopConfigurationError):
            await accountant.provision_loop(
                TENANT_ID, "part-001", "facility-001", LoopType.TRANSFER, 10
            )

    async def test_single_mode_rejects_many_cards(
        self, accountant: QuantityAccountant
    ) -> None:
        with pytest.raises(LoopConfigurationError):
            await accountant.provision_loop(
                TENANT_ID,
                "part-001",
                "facility-001",
                LoopType.PROCUREMENT,
                10,
                number_of_cards=2,
            )

    @pytest.mark.parametrize("qty", [0, -5])
    async def test_order_quantity_positive(
        self, accountant: QuantityAccountant, qty: int
    ) -> None:
        with pytest.raises(InvalidOrderQuantityError):
            await accountant.provision_loop(
                TENANT_ID, "part-001", "facility-001", LoopType.PROCUREMENT, qty
            )

    async def test_unknown_loop_type(self, accountant: QuantityAccountant) -> None:
        with pytest.raises(LoopConfigurationError):
            await accountant.provision_loop(
                TENANT_ID, "part-001", "facility-001", "consignment", 10
            )


class TestInitializeCards:
    async def test_creates_numbered_cards(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop = make_loop(card_mode=CardMode.MULTI, number_of_cards=4)
        async with db_session_factory() as session, session.begin():
            session.add(loop)

        result = await accountant.initialize_cards(loop.id, TENANT_ID, 4)

        assert result.cards_created == 4
        assert [c.card_number for c in result.cards] == [1, 2, 3, 4]
        assert all(c.current_stage == CardStage.CREATED for c in result.cards)

    async def test_refuses_when_cards_exist(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(CardsAlreadyExistError):
            await accountant.initialize_cards(loop.id, TENANT_ID, 2)

    async def test_zero_cards_rejected(self, accountant: QuantityAccountant) -> None:
        with pytest.raises(InvalidCardCountError):
            await accountant.initialize_cards("any-loop", TENANT_ID, 0)

    async def test_unknown_loop(self, accountant: QuantityAccountant) -> None:
        with pytest.raises(LoopNotFoundError):
            await accountant.initialize_cards("missing", TENANT_ID, 1)


class TestSwitchCardMode:
    async def test_single_to_multi_adds_cards(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)

        result = await accountant.switch_card_mode(
            loop.id,
            TENANT_ID,
            CardMode.MULTI,
            "Demand doubled",
            new_number_of_cards=3,
            user_id="user-001",
        )

        assert result.previous_mode == CardMode.SINGLE
        assert result.new_mode == CardMode.MULTI
        assert result.cards_created == 2
        assert result.cards_deactivated == 0
        cards = await _cards(db_session_factory, loop.id)
        assert [(c.card_number, c.is_active) for c in cards] == [
            (1, True),
            (2, True),
            (3, True),
        ]

    async def test_multi_to_single_deactivates_extras(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(
            db_session_factory,
            stages=[CardStage.CREATED, CardStage.CREATED, CardStage.TRIGGERED],
        )

        result = await accountant.switch_card_mode(
            loop.id, TENANT_ID, CardMode.SINGLE, "Consolidating"
        )

        assert result.new_number_of_cards == 1
        assert result.cards_deactivated == 2
        assert result.cards_created == 0
        cards = await _cards(db_session_factory, loop.id)
        # Deactivated cards are kept, never deleted.
        assert len(cards) == 3
        assert [c.card_number for c in cards if c.is_active] == [1]
        deactivated = [c for c in cards if not c.is_active]
        assert all(c.version == 1 for c in deactivated)

    async def test_growing_after_shrink_reuses_free_numbers(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(
            db_session_factory, stages=[CardStage.CREATED] * 3
        )
        await accountant.switch_card_mode(
            loop.id, TENANT_ID, CardMode.MULTI, "shrink", new_number_of_cards=1
        )
        await accountant.switch_card_mode(
            loop.id, TENANT_ID, CardMode.MULTI, "grow", new_number_of_cards=2
        )

        cards = await _cards(db_session_factory, loop.id)
        active = sorted(c.card_number for c in cards if c.is_active)
        assert active == [1, 2]
        assert len(cards) == 4

    async def test_number_of_cards_defaults_to_loop(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(
            db_session_factory, stages=[CardStage.CREATED] * 2
        )
        result = await accountant.switch_card_mode(
            loop.id, TENANT_ID, "multi", "no-op switch"
        )
        assert result.new_number_of_cards == 2
        assert result.cards_created == 0
        assert result.cards_deactivated == 0

    async def test_history_row_written(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        await accountant.switch_card_mode(
            loop.id,
            TENANT_ID,
            CardMode.MULTI,
            "  Seasonal peak  ",
            new_number_of_cards=2,
            user_id="user-004",
        )

        [row] = await _history(db_session_factory, loop.id)
        assert row.change_type == "mode_switch"
        assert row.previous_card_mode == "single"
        assert row.new_card_mode == "multi"
        assert row.previous_number_of_cards == 1
        assert row.new_number_of_cards == 2
        assert row.reason == "Seasonal peak"
        assert row.changed_by_user_id == "user-004"

        async with db_session_factory() as session:
            stored = await session.get(KanbanLoopModel, loop.id)
        assert stored is not None
        assert stored.card_mode == "multi"
        assert stored.number_of_cards == 2

    @pytest.mark.parametrize("reason", ["", "   "])
    async def test_reason_required(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
        reason: str,
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(ReasonRequiredError):
            await accountant.switch_card_mode(loop.id, TENANT_ID, CardMode.MULTI, reason)
        assert await _history(db_session_factory, loop.id) == []

    async def test_zero_cards_rejected(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(InvalidCardCountError):
            await accountant.switch_card_mode(
                loop.id, TENANT_ID, CardMode.MULTI, "bad", new_number_of_cards=0
            )

    async def test_other_tenant_cannot_switch(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(LoopNotFoundError):
            await accountant.switch_card_mode(
                loop.id, OTHER_TENANT_ID, CardMode.MULTI, "hijack", new_number_of_cards=5
            )


class TestUpdateOrderQuantity:
    async def test_updates_and_records_history(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory, order_quantity=50)

        result = await accountant.update_loop_order_quantity(
            loop.id, TENANT_ID, 80, "Supplier MOQ raised", user_id="user-002"
        )

        assert result.previous_order_quantity == 50
        assert result.new_order_quantity == 80
        [row] = await _history(db_session_factory, loop.id)
        assert row.change_type == "order_quantity"
        assert row.previous_order_quantity == 50
        assert row.new_order_quantity == 80

    async def test_quantity_must_be_positive(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(InvalidOrderQuantityError):
            await accountant.update_loop_order_quantity(loop.id, TENANT_ID, 0, "typo")

    async def test_reason_required(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(db_session_factory)
        with pytest.raises(ReasonRequiredError):
            await accountant.update_loop_order_quantity(loop.id, TENANT_ID, 10, "")


class TestProjections:
    async def test_inferred_quantity_breakdown(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, cards = await seed_loop(
            db_session_factory,
            stages=[CardStage.CREATED, CardStage.TRIGGERED, CardStage.IN_TRANSIT],
            order_quantity=20,
        )

        quantity = await accountant.calculate_loop_inferred_quantity(loop.id, TENANT_ID)

        assert quantity.total_cards == 3
        assert quantity.order_quantity_per_card == 20
        assert quantity.total_inferred_quantity == 40
        assert [b.is_counting for b in quantity.card_breakdown] == [False, True, True]
        assert [b.card_id for b in quantity.card_breakdown] == [c.id for c in cards]

    async def test_inactive_cards_excluded(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(
            db_session_factory,
            stages=[CardStage.TRIGGERED, CardStage.TRIGGERED],
            order_quantity=10,
        )
        await accountant.switch_card_mode(loop.id, TENANT_ID, CardMode.SINGLE, "shrink")

        quantity = await accountant.calculate_loop_inferred_quantity(loop.id, TENANT_ID)
        assert quantity.total_cards == 1
        assert quantity.total_inferred_quantity == 10

    async def test_card_summary(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, _ = await seed_loop(
            db_session_factory,
            stages=[
                CardStage.CREATED,
                CardStage.TRIGGERED,
                CardStage.TRIGGERED,
                CardStage.ORDERED,
            ],
            order_quantity=5,
        )

        summary = await accountant.get_loop_card_summary(loop.id, TENANT_ID)

        assert summary.card_mode == CardMode.MULTI
        assert summary.total_cards == 4
        assert summary.stage_counts == {"created": 1, "triggered": 2, "ordered": 1}
        assert summary.triggered_count == 2
        assert summary.in_flight_count == 3
        assert summary.total_inferred_quantity == 15

    async def test_consolidation_groups_triggered_cards(
        self,
        accountant: QuantityAccountant,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, cards = await seed_loop(
            db_session_factory,
            stages=[CardStage.TRIGGERED, CardStage.ORDERED, CardStage.TRIGGERED],
            order_quantity=12,
        )

        consolidation = await accountant.get_triggered_cards_for_consolidation(
            loop.id, TENANT_ID
        )

        assert consolidation.loop_type == LoopType.PROCUREMENT
        assert consolidation.supplier_id == "supplier-001"
        assert [c.card_number for c in consolidation.cards] == [1, 3]
        assert [c.card_id for c in consolidation.cards] == [cards[0].id, cards[2].id]
        assert consolidation.consolidated_quantity == 24

    async def test_projection_for_unknown_loop(self, accountant: QuantityAccountant) -> None:
        with pytest.raises(LoopNotFoundError):
            await accountant.get_loop_card_summary("missing", TENANT_ID)
