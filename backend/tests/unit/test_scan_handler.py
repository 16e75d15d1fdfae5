"""Tests for ScanHandler.trigger_card_by_scan -- the QR scan trigger path."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanban.events.memory import InMemoryEventBus
from kanban.events.types import QueueEntryEvent, ScanConflictEvent
from kanban.lifecycle.dedupe import ScanDedupeManager
from kanban.lifecycle.errors import (
    CardDeactivatedError,
    CardNotFoundError,
    InvalidTransitionError,
    ScanConflictError,
    ScanDuplicateError,
    TenantMismatchError,
)
from kanban.lifecycle.manager import CardLifecycleManager
from kanban.lifecycle.scan import ScanHandler, conflict_resolution, queue_message
from kanban.lifecycle.types import (
    CardStage,
    LoopType,
    ScanConflictResolution,
    ScanLocation,
    TransitionMethod,
)
from tests.factories import OTHER_TENANT_ID, TENANT_ID, make_card, make_loop, seed_loop


class TestConflictResolution:
    def test_created_is_ok(self) -> None:
        assert conflict_resolution("created") == ScanConflictResolution.OK

    def test_triggered_is_already_triggered(self) -> None:
        assert conflict_resolution(CardStage.TRIGGERED) == ScanConflictResolution.ALREADY_TRIGGERED

    @pytest.mark.parametrize(
        "stage",
        [CardStage.ORDERED, CardStage.IN_TRANSIT, CardStage.RECEIVED, CardStage.RESTOCKED],
    )
    def test_later_stages_are_advanced(self, stage: CardStage) -> None:
        assert conflict_resolution(stage) == ScanConflictResolution.STAGE_ADVANCED


class TestQueueMessage:
    @pytest.mark.parametrize(
        ("loop_type", "expected"),
        [
            (LoopType.PROCUREMENT, "Card triggered. Part added to Order Queue."),
            (LoopType.PRODUCTION, "Card triggered. Part added to Production Queue."),
            (LoopType.TRANSFER, "Card triggered. Part added to Transfer Queue."),
        ],
    )
    def test_message_names_the_queue(self, loop_type: LoopType, expected: str) -> None:
        assert queue_message(loop_type) == expected
        assert queue_message(loop_type.value) == expected


class TestTriggerByScan:
    async def test_scan_triggers_created_card(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop, [card] = await seed_loop(db_session_factory, loop_type=LoopType.PRODUCTION)

        result = await scan_handler.trigger_card_by_scan(
            card.id,
            tenant_id=TENANT_ID,
            scanned_by_user_id="user-007",
        )

        assert result.card.current_stage == CardStage.TRIGGERED
        assert result.loop_type == LoopType.PRODUCTION
        assert result.part_id == loop.part_id
        assert result.message == "Card triggered. Part added to Production Queue."

    async def test_scan_records_qr_method_and_metadata(
        self,
        scan_handler: ScanHandler,
        manager: CardLifecycleManager,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)

        with patch.object(
            manager, "transition_card", wraps=manager.transition_card
        ) as transition:
            await scan_handler.trigger_card_by_scan(
                card.id,
                tenant_id=TENANT_ID,
                location=ScanLocation(lat=41.88, lng=-87.63),
                scanned_at="2026-02-10T14:00:00.000000Z",
                idempotency_key="scan-1",
            )

        request = transition.call_args.args[0]
        assert request.method == TransitionMethod.QR_SCAN
        assert request.to_stage == CardStage.TRIGGERED
        assert request.idempotency_key == "scan-1"
        assert request.metadata == {
            "scan_location": {"lat": 41.88, "lng": -87.63},
            "scanned_at": "2026-02-10T14:00:00.000000Z",
        }

    async def test_scan_without_tenant_uses_card_tenant(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        result = await scan_handler.trigger_card_by_scan(card.id)
        assert result.card.tenant_id == TENANT_ID

    async def test_scan_publishes_queue_entry(
        self,
        scan_handler: ScanHandler,
        event_bus: InMemoryEventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)
        assert len(event_bus.of_type(QueueEntryEvent.type)) == 1

    async def test_unknown_card(self, scan_handler: ScanHandler) -> None:
        with pytest.raises(CardNotFoundError):
            await scan_handler.trigger_card_by_scan("no-such-card", tenant_id=TENANT_ID)

    async def test_other_tenant_is_told_mismatch(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        with pytest.raises(TenantMismatchError) as exc_info:
            await scan_handler.trigger_card_by_scan(card.id, tenant_id=OTHER_TENANT_ID)
        assert exc_info.value.status_code == 403

    async def test_deactivated_card(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        loop = make_loop()
        card = make_card(loop, is_active=False)
        async with db_session_factory() as session, session.begin():
            session.add(loop)
            await session.flush()
            session.add(card)

        with pytest.raises(CardDeactivatedError):
            await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)


class TestScanConflicts:
    async def test_second_scan_conflicts_as_already_triggered(
        self,
        scan_handler: ScanHandler,
        event_bus: InMemoryEventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)

        with pytest.raises(ScanConflictError) as exc_info:
            await scan_handler.trigger_card_by_scan(
                card.id,
                tenant_id=TENANT_ID,
                scanned_by_user_id="user-002",
            )

        err = exc_info.value
        assert err.status_code == 409
        assert err.current_stage == "triggered"
        assert err.resolution == "already_triggered"
        assert '"triggered"' in err.message

        conflicts = event_bus.of_type(ScanConflictEvent.type)
        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert isinstance(conflict, ScanConflictEvent)
        assert conflict.card_id == card.id
        assert conflict.current_stage == "triggered"
        assert conflict.resolution == "already_triggered"
        assert conflict.scanned_by_user_id == "user-002"

    async def test_advanced_card_conflicts(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory, stages=[CardStage.IN_TRANSIT])
        with pytest.raises(ScanConflictError) as exc_info:
            await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)
        assert exc_info.value.resolution == "stage_advanced"

    async def test_restocked_card_cannot_be_scanned_into_new_cycle(
        self,
        scan_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory, stages=[CardStage.RESTOCKED])
        with pytest.raises(ScanConflictError):
            await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)

    async def test_conflict_event_keeps_offline_scan_time(
        self,
        scan_handler: ScanHandler,
        event_bus: InMemoryEventBus,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory, stages=[CardStage.ORDERED])
        with pytest.raises(ScanConflictError):
            await scan_handler.trigger_card_by_scan(
                card.id,
                tenant_id=TENANT_ID,
                scanned_at="2026-02-09T08:30:00.000000Z",
                idempotency_key="offline-1",
            )
        [conflict] = event_bus.of_type(ScanConflictEvent.type)
        assert isinstance(conflict, ScanConflictEvent)
        assert conflict.scanned_at == "2026-02-09T08:30:00.000000Z"
        assert conflict.idempotency_key == "offline-1"

    async def test_lost_race_becomes_scan_conflict(
        self,
        scan_handler: ScanHandler,
        manager: CardLifecycleManager,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Another scan advanced the card after our stage check."""
        _, [card] = await seed_loop(db_session_factory)

        with patch.object(
            manager,
            "transition_card",
            side_effect=InvalidTransitionError("triggered", "triggered", ["ordered"]),
        ):
            with pytest.raises(ScanConflictError) as exc_info:
                await scan_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)

        # The card never moved, so the conflict reports the reloaded stage.
        assert exc_info.value.current_stage == "created"


class TestScanDedupe:
    @pytest.fixture
    def dedupe(self) -> ScanDedupeManager:
        return ScanDedupeManager()

    @pytest.fixture
    def deduped_handler(
        self,
        manager: CardLifecycleManager,
        dedupe: ScanDedupeManager,
    ) -> ScanHandler:
        return ScanHandler(manager, dedupe=dedupe)

    async def test_completed_scan_is_duplicate(
        self,
        deduped_handler: ScanHandler,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        await deduped_handler.trigger_card_by_scan(
            card.id, tenant_id=TENANT_ID, idempotency_key="dup-1"
        )

        with pytest.raises(ScanDuplicateError) as exc_info:
            await deduped_handler.trigger_card_by_scan(
                card.id, tenant_id=TENANT_ID, idempotency_key="dup-1"
            )
        assert exc_info.value.existing_status == "completed"
        assert exc_info.value.status_code == 409

    async def test_in_flight_scan_is_duplicate(
        self,
        deduped_handler: ScanHandler,
        dedupe: ScanDedupeManager,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        await dedupe.check_and_claim(TENANT_ID, card.id, "dup-2")

        with pytest.raises(ScanDuplicateError) as exc_info:
            await deduped_handler.trigger_card_by_scan(
                card.id, tenant_id=TENANT_ID, idempotency_key="dup-2"
            )
        assert exc_info.value.existing_status == "pending"

    async def test_failed_scan_releases_claim(
        self,
        deduped_handler: ScanHandler,
        dedupe: ScanDedupeManager,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory, stages=[CardStage.ORDERED])
        with pytest.raises(ScanConflictError):
            await deduped_handler.trigger_card_by_scan(
                card.id, tenant_id=TENANT_ID, idempotency_key="retry-me"
            )

        decision = await dedupe.check_and_claim(TENANT_ID, card.id, "retry-me")
        assert decision.allowed is True

    async def test_scan_without_key_skips_dedupe(
        self,
        deduped_handler: ScanHandler,
        dedupe: ScanDedupeManager,
        db_session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        _, [card] = await seed_loop(db_session_factory)
        await deduped_handler.trigger_card_by_scan(card.id, tenant_id=TENANT_ID)
        assert len(dedupe) == 0

