"""Card lifecycle manager -- async transition orchestrator.

Single entry point for changing a card's stage. Validates the request
against the rule table, writes the transition ledger row and the card
update in one transaction, then publishes lifecycle events. All lifecycle
activity logged via structlog.
"""

from __future__ import annotations

from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanban.events.bus import EventBus
from kanban.events.types import (
    CycleCompleteEvent,
    LifecycleEvent,
    OrderLinkedEvent,
    QueueEntryEvent,
    TransitionEvent,
)
from kanban.lifecycle.errors import (
    CardDeactivatedError,
    CardNotFoundError,
    InvalidTransitionError,
    LoopTypeIncompatibleError,
    MethodNotAllowedError,
    MissingLinkedOrderError,
    RoleNotAllowedError,
    StageConflictError,
)
from kanban.lifecycle.rules import (
    TransitionRule,
    allowed_targets,
    coerce_enum,
    find_rule,
    is_loop_type_allowed,
    is_method_allowed,
    is_role_allowed,
    is_valid_transition,
)
from kanban.lifecycle.types import (
    CardSnapshot,
    CardStage,
    LinkedOrderType,
    TransitionMethod,
    TransitionRecord,
    TransitionRequest,
    TransitionResult,
)
from kanban.models.kanban import CardTransitionModel, KanbanCardModel, KanbanLoopModel
from kanban.utils.time import format_timestamp, not_before, seconds_between, utc_now

log = structlog.get_logger()

# Attempts before giving up on a card that keeps changing underneath us
_STAGE_RETRY_MAX = 3

_LINK_COLUMNS: dict[LinkedOrderType, str] = {
    LinkedOrderType.PURCHASE_ORDER: "linked_purchase_order_id",
    LinkedOrderType.WORK_ORDER: "linked_work_order_id",
    LinkedOrderType.TRANSFER_ORDER: "linked_transfer_order_id",
}


class _StageChanged(Exception):
    """The card's version moved between validation and write."""


def _enum_value(value: object) -> str:
    return str(getattr(value, "value", value))


def _starts_new_cycle(from_stage: CardStage, to_stage: CardStage) -> bool:
    return from_stage == CardStage.RESTOCKED and to_stage == CardStage.TRIGGERED


class CardLifecycleManager:
    """Async orchestrator for kanban card stage transitions.

    Precondition order (first failure wins): card exists for tenant,
    card active, legal edge, role, loop type, method, linked order.
    An idempotency key that matches a persisted transition short-circuits
    everything after the card lookup.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_bus: EventBus,
    ) -> None:
        self._session_factory = session_factory
        self._event_bus = event_bus

    async def transition_card(self, request: TransitionRequest) -> TransitionResult:
        """Validate, persist, and announce one stage change.

        Raises:
            LifecycleError: A typed rejection; nothing was written.
            StageConflictError: The card changed concurrently on every attempt.
        """
        for attempt in range(1, _STAGE_RETRY_MAX + 1):
            loaded = await self.load_card(request.card_id, request.tenant_id)
            if loaded is None:
                raise CardNotFoundError(request.card_id)
            card, loop = loaded
            if not card.is_active:
                raise CardDeactivatedError(card.id)

            if request.idempotency_key:
                existing = await self._find_idempotent_transition(
                    request.tenant_id,
                    card.id,
                    request.idempotency_key,
                )
                if existing is not None:
                    log.info(
                        "transition_replayed",
                        card_id=card.id,
                        transition_id=existing.id,
                        idempotency_key=request.idempotency_key,
                    )
                    return TransitionResult(
                        card=CardSnapshot.from_model(card),
                        transition=TransitionRecord.from_model(existing),
                        event_id=None,
                        replayed=True,
                    )

            self._validate(card, loop, request)

            try:
                snapshot, record, stage_duration = await self._persist_transition(
                    card, request
                )
            except _StageChanged:
                log.warning(
                    "transition_stage_race",
                    card_id=card.id,
                    expected_stage=card.current_stage,
                    attempt=attempt,
                )
                continue
            except IntegrityError:
                # A concurrent submission with the same key won the unique index.
                if not request.idempotency_key:
                    raise
                existing = await self._find_idempotent_transition(
                    request.tenant_id,
                    card.id,
                    request.idempotency_key,
                )
                if existing is None:
                    raise
                reloaded = await self.load_card(card.id, request.tenant_id)
                current = reloaded[0] if reloaded is not None else card
                log.info(
                    "transition_replayed",
                    card_id=card.id,
                    transition_id=existing.id,
                    idempotency_key=request.idempotency_key,
                    detected_at="write",
                )
                return TransitionResult(
                    card=CardSnapshot.from_model(current),
                    transition=TransitionRecord.from_model(existing),
                    event_id=None,
                    replayed=True,
                )

            log.info(
                "card_transitioned",
                card_id=card.id,
                loop_id=card.loop_id,
                from_stage=record.from_stage.value if record.from_stage else None,
                to_stage=record.to_stage.value,
                method=record.method.value,
                cycle_number=record.cycle_number,
            )

            event_id = await self._publish_transition_events(
                loop, record, request, stage_duration
            )
            return TransitionResult(
                card=snapshot,
                transition=record,
                event_id=event_id,
            )

        raise StageConflictError(request.card_id, _STAGE_RETRY_MAX)

    async def load_card(
        self,
        card_id: str,
        tenant_id: str | None = None,
    ) -> tuple[KanbanCardModel, KanbanLoopModel] | None:
        """Fetch a card with its owning loop. tenant_id=None skips isolation."""
        stmt = (
            select(KanbanCardModel, KanbanLoopModel)
            .join(KanbanLoopModel, KanbanLoopModel.id == KanbanCardModel.loop_id)
            .where(KanbanCardModel.id == card_id)
        )
        if tenant_id is not None:
            stmt = stmt.where(KanbanCardModel.tenant_id == tenant_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def publish_event(self, event: LifecycleEvent) -> bool:
        """Attempt a publish. Failures are logged, never raised."""
        try:
            await self._event_bus.publish(event)
        except Exception:
            log.exception("event_publish_failed", event_type=event.type)
            return False
        return True

    # --- Internal helpers ---

    def _validate(
        self,
        card: KanbanCardModel,
        loop: KanbanLoopModel,
        request: TransitionRequest,
    ) -> TransitionRule | None:
        """Run preconditions 3-7. Returns the matched rule."""
        from_stage = card.current_stage
        to_stage = coerce_enum(CardStage, request.to_stage)
        to_value = to_stage.value if to_stage is not None else str(request.to_stage)

        if not is_valid_transition(from_stage, to_value):
            raise InvalidTransitionError(
                from_stage,
                to_value,
                sorted(s.value for s in allowed_targets(from_stage)),
            )

        if request.user_role is not None and not is_role_allowed(
            from_stage, to_value, request.user_role
        ):
            raise RoleNotAllowedError(
                _enum_value(request.user_role),
                from_stage,
                to_value,
            )

        rule = find_rule(from_stage, to_value)

        if not is_loop_type_allowed(from_stage, to_value, loop.loop_type):
            raise LoopTypeIncompatibleError(loop.loop_type, from_stage, to_value)

        if not is_method_allowed(from_stage, to_value, request.method):
            raise MethodNotAllowedError(
                _enum_value(request.method),
                from_stage,
                to_value,
            )

        if rule is not None and rule.requires_linked_order:
            order_type = coerce_enum(LinkedOrderType, request.linked_order_type)
            if not request.linked_order_id or order_type not in rule.linked_order_types:
                raise MissingLinkedOrderError(
                    from_stage,
                    to_value,
                    sorted(t.value for t in rule.linked_order_types),
                )

        return rule

    async def _find_idempotent_transition(
        self,
        tenant_id: str,
        card_id: str,
        idempotency_key: str,
    ) -> CardTransitionModel | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardTransitionModel).where(
                    CardTransitionModel.tenant_id == tenant_id,
                    CardTransitionModel.card_id == card_id,
                    CardTransitionModel.idempotency_key == idempotency_key,
                )
            )
            return result.scalar_one_or_none()

    async def _persist_transition(
        self,
        card: KanbanCardModel,
        request: TransitionRequest,
    ) -> tuple[CardSnapshot, TransitionRecord, int]:
        """Insert the ledger row and update the card atomically.

        The card update is guarded on the version read during validation.

        Raises:
            _StageChanged: The card was modified concurrently.
            IntegrityError: The idempotency key was claimed concurrently.
        """
        from_stage = CardStage(card.current_stage)
        to_stage = CardStage(request.to_stage)
        method = TransitionMethod(request.method)
        order_type = coerce_enum(LinkedOrderType, request.linked_order_type)
        linked_order_id = request.linked_order_id if order_type is not None else None

        entered_at = format_timestamp(
            not_before(utc_now(), card.current_stage_entered_at)
        )
        stage_duration = seconds_between(card.current_stage_entered_at, entered_at)
        new_cycle = _starts_new_cycle(from_stage, to_stage)
        completed_cycles = card.completed_cycles + (1 if new_cycle else 0)
        cycle_number = completed_cycles + 1

        metadata = dict(request.metadata or {})
        if linked_order_id is not None and order_type is not None:
            metadata["linked_order_id"] = linked_order_id
            metadata["linked_order_type"] = order_type.value
        if request.idempotency_key:
            metadata["idempotency_key"] = request.idempotency_key
        if request.quantity:
            metadata["quantity"] = request.quantity
        metadata["stage_duration_seconds"] = stage_duration

        values: dict[str, object] = {
            "current_stage": to_stage.value,
            "current_stage_entered_at": entered_at,
            "updated_at": entered_at,
            "completed_cycles": completed_cycles,
            "version": card.version + 1,
        }
        if new_cycle:
            for column in _LINK_COLUMNS.values():
                values[column] = None
        if linked_order_id is not None and order_type is not None:
            values[_LINK_COLUMNS[order_type]] = linked_order_id

        async with self._session_factory() as session, session.begin():
            transition = CardTransitionModel(
                tenant_id=card.tenant_id,
                card_id=card.id,
                loop_id=card.loop_id,
                cycle_number=cycle_number,
                from_stage=from_stage.value,
                to_stage=to_stage.value,
                transitioned_at=entered_at,
                user_id=request.user_id,
                method=method.value,
                notes=request.notes,
                meta=metadata,
                idempotency_key=request.idempotency_key,
                linked_order_id=linked_order_id,
                linked_order_type=order_type.value if order_type else None,
            )
            session.add(transition)
            await session.flush()

            result = await session.execute(
                update(KanbanCardModel)
                .where(
                    KanbanCardModel.id == card.id,
                    KanbanCardModel.version == card.version,
                    KanbanCardModel.is_active.is_(True),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _StageChanged(card.id)

            refreshed = (
                await session.execute(
                    select(KanbanCardModel).where(KanbanCardModel.id == card.id)
                )
            ).scalar_one()
            snapshot = CardSnapshot.from_model(refreshed)
            record = TransitionRecord.from_model(transition)

        return snapshot, record, stage_duration

    async def _publish_transition_events(
        self,
        loop: KanbanLoopModel,
        record: TransitionRecord,
        request: TransitionRequest,
        stage_duration: int,
    ) -> str:
        """Post-commit fan-out. Never raises; returns the correlation id."""
        event_id = str(uuid4())
        from_stage = record.from_stage or CardStage.CREATED

        await self.publish_event(
            TransitionEvent(
                event_id=event_id,
                tenant_id=record.tenant_id,
                card_id=record.card_id,
                loop_id=record.loop_id,
                from_stage=from_stage.value,
                to_stage=record.to_stage.value,
                method=record.method.value,
                cycle_number=record.cycle_number,
                timestamp=record.transitioned_at,
                user_id=record.user_id,
                stage_duration_seconds=stage_duration,
                idempotency_key=record.idempotency_key,
            )
        )

        if record.to_stage == CardStage.TRIGGERED:
            await self.publish_event(
                QueueEntryEvent(
                    tenant_id=record.tenant_id,
                    card_id=record.card_id,
                    loop_id=record.loop_id,
                    loop_type=loop.loop_type,
                    part_id=loop.part_id,
                    facility_id=loop.facility_id,
                    quantity=request.quantity or loop.order_quantity,
                    timestamp=record.transitioned_at,
                )
            )

        if (
            record.to_stage == CardStage.ORDERED
            and record.linked_order_id is not None
            and record.linked_order_type is not None
        ):
            await self.publish_event(
                OrderLinkedEvent(
                    tenant_id=record.tenant_id,
                    card_id=record.card_id,
                    loop_id=record.loop_id,
                    order_id=record.linked_order_id,
                    order_type=record.linked_order_type.value,
                    timestamp=record.transitioned_at,
                )
            )

        if _starts_new_cycle(from_stage, record.to_stage):
            try:
                total = await self._cycle_duration_seconds(
                    record, record.cycle_number - 1
                )
            except Exception:
                log.exception("cycle_duration_lookup_failed", card_id=record.card_id)
                total = stage_duration
            await self.publish_event(
                CycleCompleteEvent(
                    tenant_id=record.tenant_id,
                    card_id=record.card_id,
                    loop_id=record.loop_id,
                    cycle_number=record.cycle_number - 1,
                    total_cycle_duration_seconds=total,
                    timestamp=record.transitioned_at,
                )
            )

        return event_id

    async def _cycle_duration_seconds(
        self,
        record: TransitionRecord,
        cycle_number: int,
    ) -> int:
        """Seconds from the first transition of ``cycle_number`` to ``record``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardTransitionModel.transitioned_at)
                .where(
                    CardTransitionModel.tenant_id == record.tenant_id,
                    CardTransitionModel.card_id == record.card_id,
                    CardTransitionModel.cycle_number == cycle_number,
                )
                .order_by(CardTransitionModel.transitioned_at.asc())
                .limit(1)
            )
            started_at = result.scalar_one_or_none()
        if started_at is None:
            return 0
        return max(0, seconds_between(started_at, record.transitioned_at))
