"""Quantity accounting -- loop parameters versus card population.

Derives in-flight quantity from card stages and manages how many cards a
loop has. Reads and writes Card/Loop rows directly and never goes through
CardLifecycleManager: a parameter change has no transition side effects.
Every parameter change is recorded in kanban_parameter_history.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanban.lifecycle.errors import (
    CardsAlreadyExistError,
    InvalidCardCountError,
    InvalidOrderQuantityError,
    LoopConfigurationError,
    LoopNotFoundError,
    ReasonRequiredError,
)
from kanban.lifecycle.types import CardMode, CardSnapshot, CardStage, LoopType
from kanban.loops.types import (
    CardQuantity,
    CardsInitialized,
    ConsolidationCard,
    LoopCardSummary,
    LoopQuantity,
    LoopSnapshot,
    ModeSwitchResult,
    OrderQuantityUpdate,
    ParameterChangeType,
    ProvisionedLoop,
    TriggeredConsolidation,
)
from kanban.models.kanban import KanbanCardModel, KanbanLoopModel, ParameterHistoryModel
from kanban.utils.time import format_timestamp, utc_now

log = structlog.get_logger()


def is_counting_stage(stage: CardStage | str) -> bool:
    """A card counts toward in-flight quantity once it has been triggered."""
    return CardStage(stage) != CardStage.CREATED


def inferred_quantity(order_quantity: int, stages: Iterable[CardStage | str]) -> int:
    """Sum of the per-card order quantity over cards not in ``created``."""
    return sum(order_quantity for stage in stages if is_counting_stage(stage))


def _new_cards(
    loop: KanbanLoopModel,
    first_number: int,
    count: int,
    now: str,
) -> list[KanbanCardModel]:
    return [
        KanbanCardModel(
            tenant_id=loop.tenant_id,
            loop_id=loop.id,
            card_number=first_number + i,
            current_stage=CardStage.CREATED.value,
            current_stage_entered_at=now,
            is_active=True,
            completed_cycles=0,
            version=0,
            created_at=now,
            updated_at=now,
        )
        for i in range(count)
    ]


def _require_reason(reason: str | None) -> str:
    if reason is None or not reason.strip():
        raise ReasonRequiredError()
    return reason.strip()


class QuantityAccountant:
    """Loop provisioning, card-count changes, and quantity projections."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # --- Provisioning ---

    async def provision_loop(
        self,
        tenant_id: str,
        part_id: str,
        facility_id: str,
        loop_type: LoopType | str,
        order_quantity: int,
        card_mode: CardMode | str = CardMode.SINGLE,
        number_of_cards: int = 1,
        primary_supplier_id: str | None = None,
        source_facility_id: str | None = None,
    ) -> ProvisionedLoop:
        """Create a loop and its cards, all in ``created``.

        Raises:
            InvalidOrderQuantityError: order_quantity < 1.
            InvalidCardCountError: number_of_cards < 1.
            LoopConfigurationError: single mode with more than one card,
                or a transfer loop without a source facility.
        """
        try:
            loop_type = LoopType(loop_type)
            card_mode = CardMode(card_mode)
        except ValueError as e:
            raise LoopConfigurationError(str(e)) from e
        if order_quantity < 1:
            raise InvalidOrderQuantityError(
                f"Order quantity must be at least 1, got {order_quantity}"
            )
        if number_of_cards < 1:
            raise InvalidCardCountError("Number of cards must be at least 1")
        if card_mode == CardMode.SINGLE and number_of_cards != 1:
            raise LoopConfigurationError(
                f"Single-card loops must have exactly 1 card, got {number_of_cards}"
            )
        if loop_type == LoopType.TRANSFER and not source_facility_id:
            raise LoopConfigurationError("Transfer loops require a source facility")

        now = format_timestamp(utc_now())
        async with self._session_factory() as session, session.begin():
            loop = KanbanLoopModel(
                tenant_id=tenant_id,
                part_id=part_id,
                facility_id=facility_id,
                loop_type=loop_type.value,
                card_mode=card_mode.value,
                order_quantity=order_quantity,
                number_of_cards=number_of_cards,
                primary_supplier_id=primary_supplier_id,
                source_facility_id=source_facility_id,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            session.add(loop)
            await session.flush()
            cards = _new_cards(loop, 1, number_of_cards, now)
            session.add_all(cards)
            await session.flush()
            result = ProvisionedLoop(
                loop=LoopSnapshot.from_model(loop),
                cards=[CardSnapshot.from_model(c) for c in cards],
            )

        log.info(
            "loop_provisioned",
            loop_id=result.loop.id,
            tenant_id=tenant_id,
            loop_type=loop_type.value,
            number_of_cards=number_of_cards,
        )
        return result

    async def initialize_cards(
        self,
        loop_id: str,
        tenant_id: str,
        number_of_cards: int,
    ) -> CardsInitialized:
        """Create cards 1..N for a loop that has no active cards."""
        if number_of_cards < 1:
            raise InvalidCardCountError("Number of cards must be at least 1")

        now = format_timestamp(utc_now())
        async with self._session_factory() as session, session.begin():
            loop = await self._get_loop(session, loop_id, tenant_id)
            existing = await self._active_cards(session, loop_id, tenant_id)
            if existing:
                raise CardsAlreadyExistError(
                    f"Loop already has {len(existing)} active cards. "
                    "Use switch_card_mode to change."
                )
            cards = _new_cards(loop, 1, number_of_cards, now)
            session.add_all(cards)
            await session.flush()
            snapshots = [CardSnapshot.from_model(c) for c in cards]

        log.info("cards_initialized", loop_id=loop_id, cards_created=len(snapshots))
        return CardsInitialized(loop_id=loop_id, cards=snapshots)

    # --- Parameter changes ---

    async def switch_card_mode(
        self,
        loop_id: str,
        tenant_id: str,
        new_mode: CardMode | str,
        reason: str,
        new_number_of_cards: int | None = None,
        user_id: str | None = None,
    ) -> ModeSwitchResult:
        """Move a loop between single and multi card mode.

        Cards numbered above the new count are deactivated, never deleted.
        New cards start in ``created``. Single mode always means one card.

        Raises:
            ReasonRequiredError: Empty or missing reason.
            InvalidCardCountError: Target count below 1.
            LoopNotFoundError: No such loop for this tenant.
        """
        reason = _require_reason(reason)
        mode = CardMode(new_mode)

        now = format_timestamp(utc_now())
        async with self._session_factory() as session, session.begin():
            loop = await self._get_loop(session, loop_id, tenant_id)
            if mode == CardMode.SINGLE:
                target = 1
            else:
                target = (
                    new_number_of_cards
                    if new_number_of_cards is not None
                    else loop.number_of_cards
                )
            if target < 1:
                raise InvalidCardCountError("Number of cards must be at least 1")

            previous_mode = CardMode(loop.card_mode)
            previous_count = loop.number_of_cards
            active = await self._active_cards(session, loop_id, tenant_id)

            cards_created = 0
            cards_deactivated = 0
            excess = [c for c in active if c.card_number > target]
            if excess:
                in_flight = [c.id for c in excess if is_counting_stage(c.current_stage)]
                if in_flight:
                    log.warning(
                        "in_flight_cards_deactivated",
                        loop_id=loop_id,
                        card_ids=in_flight,
                    )
                await session.execute(
                    update(KanbanCardModel)
                    .where(KanbanCardModel.id.in_([c.id for c in excess]))
                    .values(
                        is_active=False,
                        updated_at=now,
                        version=KanbanCardModel.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                cards_deactivated = len(excess)

            remaining = len(active) - cards_deactivated
            if target > remaining:
                highest = max(
                    (c.card_number for c in active if c.card_number <= target),
                    default=0,
                )
                session.add_all(_new_cards(loop, highest + 1, target - remaining, now))
                cards_created = target - remaining

            loop.card_mode = mode.value
            loop.number_of_cards = target
            loop.updated_at = now
            session.add(
                ParameterHistoryModel(
                    tenant_id=tenant_id,
                    loop_id=loop_id,
                    change_type=ParameterChangeType.MODE_SWITCH.value,
                    previous_card_mode=previous_mode.value,
                    new_card_mode=mode.value,
                    previous_number_of_cards=previous_count,
                    new_number_of_cards=target,
                    reason=reason,
                    changed_by_user_id=user_id,
                    created_at=now,
                )
            )

        log.info(
            "card_mode_switched",
            loop_id=loop_id,
            previous_mode=previous_mode.value,
            new_mode=mode.value,
            previous_number_of_cards=previous_count,
            new_number_of_cards=target,
            cards_created=cards_created,
            cards_deactivated=cards_deactivated,
        )
        return ModeSwitchResult(
            loop_id=loop_id,
            previous_mode=previous_mode,
            new_mode=mode,
            previous_number_of_cards=previous_count,
            new_number_of_cards=target,
            cards_created=cards_created,
            cards_deactivated=cards_deactivated,
        )

    async def update_loop_order_quantity(
        self,
        loop_id: str,
        tenant_id: str,
        new_order_quantity: int,
        reason: str,
        user_id: str | None = None,
    ) -> OrderQuantityUpdate:
        reason = _require_reason(reason)
        if new_order_quantity < 1:
            raise InvalidOrderQuantityError(
                f"Order quantity must be at least 1, got {new_order_quantity}"
            )

        now = format_timestamp(utc_now())
        async with self._session_factory() as session, session.begin():
            loop = await self._get_loop(session, loop_id, tenant_id)
            previous = loop.order_quantity
            loop.order_quantity = new_order_quantity
            loop.updated_at = now
            session.add(
                ParameterHistoryModel(
                    tenant_id=tenant_id,
                    loop_id=loop_id,
                    change_type=ParameterChangeType.ORDER_QUANTITY.value,
                    previous_order_quantity=previous,
                    new_order_quantity=new_order_quantity,
                    reason=reason,
                    changed_by_user_id=user_id,
                    created_at=now,
                )
            )

        log.info(
            "order_quantity_updated",
            loop_id=loop_id,
            previous_order_quantity=previous,
            new_order_quantity=new_order_quantity,
        )
        return OrderQuantityUpdate(
            loop_id=loop_id,
            previous_order_quantity=previous,
            new_order_quantity=new_order_quantity,
            reason=reason,
            updated_at=now,
        )

    # --- Projections ---

    async def calculate_loop_inferred_quantity(
        self, loop_id: str, tenant_id: str
    ) -> LoopQuantity:
        async with self._session_factory() as session:
            loop = await self._get_loop(session, loop_id, tenant_id)
            cards = await self._active_cards(session, loop_id, tenant_id)

        breakdown = [
            CardQuantity(
                card_id=card.id,
                card_number=card.card_number,
                stage=CardStage(card.current_stage),
                card_quantity=loop.order_quantity,
                is_counting=is_counting_stage(card.current_stage),
            )
            for card in cards
        ]
        return LoopQuantity(
            loop_id=loop_id,
            order_quantity_per_card=loop.order_quantity,
            total_cards=len(cards),
            total_inferred_quantity=inferred_quantity(
                loop.order_quantity, (c.current_stage for c in cards)
            ),
            card_breakdown=breakdown,
        )

    async def get_loop_card_summary(
        self, loop_id: str, tenant_id: str
    ) -> LoopCardSummary:
        async with self._session_factory() as session:
            loop = await self._get_loop(session, loop_id, tenant_id)
            cards = await self._active_cards(session, loop_id, tenant_id)

        stages = [c.current_stage for c in cards]
        return LoopCardSummary(
            loop_id=loop_id,
            card_mode=CardMode(loop.card_mode),
            number_of_cards=loop.number_of_cards,
            order_quantity_per_card=loop.order_quantity,
            stage_counts=dict(Counter(stages)),
            triggered_count=stages.count(CardStage.TRIGGERED.value),
            in_flight_count=sum(1 for s in stages if is_counting_stage(s)),
            total_inferred_quantity=inferred_quantity(loop.order_quantity, stages),
            cards=[CardSnapshot.from_model(c) for c in cards],
        )

    async def get_triggered_cards_for_consolidation(
        self, loop_id: str, tenant_id: str
    ) -> TriggeredConsolidation:
        async with self._session_factory() as session:
            loop = await self._get_loop(session, loop_id, tenant_id)
            cards = await self._active_cards(
                session, loop_id, tenant_id, stage=CardStage.TRIGGERED
            )

        return TriggeredConsolidation(
            loop_id=loop_id,
            loop_type=LoopType(loop.loop_type),
            part_id=loop.part_id,
            facility_id=loop.facility_id,
            supplier_id=loop.primary_supplier_id,
            source_facility_id=loop.source_facility_id,
            cards=[
                ConsolidationCard(
                    card_id=c.id,
                    card_number=c.card_number,
                    card_quantity=loop.order_quantity,
                )
                for c in cards
            ],
        )

    # --- Internal helpers ---

    async def _get_loop(
        self,
        session: AsyncSession,
        loop_id: str,
        tenant_id: str,
    ) -> KanbanLoopModel:
        result = await session.execute(
            select(KanbanLoopModel).where(
                KanbanLoopModel.id == loop_id,
                KanbanLoopModel.tenant_id == tenant_id,
            )
        )
        loop = result.scalar_one_or_none()
        if loop is None:
            raise LoopNotFoundError(loop_id)
        return loop

    async def _active_cards(
        self,
        session: AsyncSession,
        loop_id: str,
        tenant_id: str,
        stage: CardStage | None = None,
    ) -> list[KanbanCardModel]:
        stmt = select(KanbanCardModel).where(
            KanbanCardModel.loop_id == loop_id,
            KanbanCardModel.tenant_id == tenant_id,
            KanbanCardModel.is_active.is_(True),
        )
        if stage is not None:
            stmt = stmt.where(KanbanCardModel.current_stage == stage.value)
        result = await session.execute(stmt.order_by(KanbanCardModel.card_number))
        return list(result.scalars())
