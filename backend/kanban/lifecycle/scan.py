"""QR scan trigger handler and offline batch replay.

The scan flow only ever takes a card from created to triggered. A card in
any other stage is a scan conflict: the operator is told which stage the
card is actually in rather than receiving a generic validation error.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import NoReturn

import structlog

from kanban.events.types import ScanConflictEvent
from kanban.lifecycle.dedupe import ScanDedupeManager
from kanban.lifecycle.errors import (
    CardDeactivatedError,
    CardNotFoundError,
    ErrorCode,
    InvalidTransitionError,
    LifecycleError,
    ScanConflictError,
    ScanDuplicateError,
    TenantMismatchError,
)
from kanban.lifecycle.manager import CardLifecycleManager
from kanban.lifecycle.types import (
    QUEUE_NAMES,
    CardStage,
    LoopType,
    ScanConflictResolution,
    ScanLocation,
    ScanReplayItem,
    ScanReplayResult,
    ScanTriggerResult,
    TransitionMethod,
    TransitionRequest,
)
from kanban.models.kanban import KanbanCardModel
from kanban.utils.logging import correlation_scope
from kanban.utils.time import format_timestamp, utc_now

log = structlog.get_logger()


def conflict_resolution(stage: CardStage | str) -> ScanConflictResolution:
    """Classify why a card in ``stage`` cannot be scan-triggered."""
    if CardStage(stage) == CardStage.CREATED:
        return ScanConflictResolution.OK
    if CardStage(stage) == CardStage.TRIGGERED:
        return ScanConflictResolution.ALREADY_TRIGGERED
    return ScanConflictResolution.STAGE_ADVANCED


def queue_message(loop_type: LoopType | str) -> str:
    return f"Card triggered. Part added to {QUEUE_NAMES[LoopType(loop_type)]}."


class ScanHandler:
    """Scan-specific caller of CardLifecycleManager.

    Args:
        manager: Orchestrator that performs the actual transition.
        dedupe: Optional in-process fast path for duplicate scans.
    """

    def __init__(
        self,
        manager: CardLifecycleManager,
        dedupe: ScanDedupeManager | None = None,
    ) -> None:
        self._manager = manager
        self._dedupe = dedupe

    async def trigger_card_by_scan(
        self,
        card_id: str,
        tenant_id: str | None = None,
        scanned_by_user_id: str | None = None,
        location: ScanLocation | None = None,
        idempotency_key: str | None = None,
        scanned_at: str | None = None,
    ) -> ScanTriggerResult:
        """Trigger a card from a physical QR scan.

        Raises:
            ScanDuplicateError: The same scan is in flight or just completed.
            CardNotFoundError, TenantMismatchError, CardDeactivatedError
            ScanConflictError: The card is not in the created stage.
        """
        with correlation_scope("scan"):
            return await self._claim_and_trigger(
                card_id,
                tenant_id,
                scanned_by_user_id,
                location,
                idempotency_key,
                scanned_at,
            )

    async def _claim_and_trigger(
        self,
        card_id: str,
        tenant_id: str | None,
        scanned_by_user_id: str | None,
        location: ScanLocation | None,
        idempotency_key: str | None,
        scanned_at: str | None,
    ) -> ScanTriggerResult:
        claimed = False
        dedupe_tenant = tenant_id or ""
        if self._dedupe is not None and idempotency_key:
            decision = await self._dedupe.check_and_claim(
                dedupe_tenant, card_id, idempotency_key
            )
            if not decision.allowed:
                status = decision.existing_status
                raise ScanDuplicateError(
                    card_id,
                    idempotency_key,
                    status.value if status is not None else "unknown",
                )
            claimed = True

        try:
            result = await self._trigger(
                card_id,
                tenant_id,
                scanned_by_user_id,
                location,
                idempotency_key,
                scanned_at,
            )
        except Exception as exc:
            if claimed and self._dedupe is not None and idempotency_key:
                await self._dedupe.mark_failed(
                    dedupe_tenant, card_id, idempotency_key, str(exc)
                )
            raise

        if claimed and self._dedupe is not None and idempotency_key:
            await self._dedupe.mark_completed(
                dedupe_tenant, card_id, idempotency_key, result
            )
        return result

    async def replay_scans(
        self,
        items: Sequence[ScanReplayItem],
        tenant_id: str,
        user_id: str | None = None,
    ) -> list[ScanReplayResult]:
        """Replay offline scans one at a time. Never raises.

        A failing item becomes a result with success=False; the rest of
        the batch still runs. Every scan in the batch logs under one
        correlation ID.
        """
        with correlation_scope("replay"):
            return await self._replay(items, tenant_id, user_id)

    async def _replay(
        self,
        items: Sequence[ScanReplayItem],
        tenant_id: str,
        user_id: str | None,
    ) -> list[ScanReplayResult]:
        results: list[ScanReplayResult] = []
        for item in items:
            try:
                triggered = await self.trigger_card_by_scan(
                    item.card_id,
                    tenant_id=tenant_id,
                    scanned_by_user_id=user_id,
                    location=item.location,
                    idempotency_key=item.idempotency_key,
                    scanned_at=item.scanned_at,
                )
            except ScanDuplicateError as exc:
                results.append(_failed(item, exc.message, ErrorCode.SCAN_DUPLICATE))
            except LifecycleError as exc:
                log.info(
                    "replay_item_rejected",
                    card_id=item.card_id,
                    idempotency_key=item.idempotency_key,
                    error_code=exc.code.value,
                )
                results.append(_failed(item, exc.message, exc.code))
            except Exception as exc:
                log.exception(
                    "replay_item_failed",
                    card_id=item.card_id,
                    idempotency_key=item.idempotency_key,
                )
                results.append(_failed(item, str(exc), ErrorCode.UNKNOWN_ERROR))
            else:
                results.append(
                    ScanReplayResult(
                        card_id=item.card_id,
                        idempotency_key=item.idempotency_key,
                        success=True,
                        card=triggered.card,
                        loop_type=triggered.loop_type,
                        part_id=triggered.part_id,
                        message=triggered.message,
                    )
                )

        log.info(
            "scan_replay_complete",
            tenant_id=tenant_id,
            total=len(results),
            succeeded=sum(1 for r in results if r.success),
        )
        return results

    async def _trigger(
        self,
        card_id: str,
        tenant_id: str | None,
        scanned_by_user_id: str | None,
        location: ScanLocation | None,
        idempotency_key: str | None,
        scanned_at: str | None,
    ) -> ScanTriggerResult:
        loaded = await self._manager.load_card(card_id)
        if loaded is None:
            raise CardNotFoundError(card_id)
        card, loop = loaded
        if tenant_id is not None and card.tenant_id != tenant_id:
            log.warning("scan_tenant_mismatch", card_id=card_id, tenant_id=tenant_id)
            raise TenantMismatchError(card_id)
        if not card.is_active:
            raise CardDeactivatedError(card.id)
        if card.current_stage != CardStage.CREATED.value:
            await self._raise_conflict(
                card, card.current_stage, scanned_by_user_id, idempotency_key, scanned_at
            )

        metadata: dict[str, object] = {}
        if location is not None:
            metadata["scan_location"] = location.to_dict()
        if scanned_at is not None:
            metadata["scanned_at"] = scanned_at

        request = TransitionRequest(
            card_id=card.id,
            tenant_id=card.tenant_id,
            to_stage=CardStage.TRIGGERED,
            method=TransitionMethod.QR_SCAN,
            user_id=scanned_by_user_id,
            metadata=metadata or None,
            idempotency_key=idempotency_key,
        )
        try:
            result = await self._manager.transition_card(request)
        except InvalidTransitionError:
            # Another scan moved the card between our read and the orchestrator's.
            fresh = await self._manager.load_card(card.id)
            stage = fresh[0].current_stage if fresh is not None else card.current_stage
            await self._raise_conflict(
                card, stage, scanned_by_user_id, idempotency_key, scanned_at
            )

        if result.replayed:
            await self._raise_conflict(
                card,
                result.card.current_stage.value,
                scanned_by_user_id,
                idempotency_key,
                scanned_at,
            )

        loop_type = LoopType(loop.loop_type)
        log.info(
            "card_triggered_by_scan",
            card_id=card.id,
            loop_id=loop.id,
            loop_type=loop_type.value,
            user_id=scanned_by_user_id,
        )
        return ScanTriggerResult(
            card=result.card,
            loop_type=loop_type,
            part_id=loop.part_id,
            message=queue_message(loop_type),
        )

    async def _raise_conflict(
        self,
        card: KanbanCardModel,
        stage: str,
        scanned_by_user_id: str | None,
        idempotency_key: str | None,
        scanned_at: str | None,
    ) -> NoReturn:
        resolution = conflict_resolution(stage)
        now = format_timestamp(utc_now())
        log.warning(
            "scan_conflict",
            card_id=card.id,
            current_stage=stage,
            resolution=resolution.value,
        )
        await self._manager.publish_event(
            ScanConflictEvent(
                tenant_id=card.tenant_id,
                card_id=card.id,
                current_stage=stage,
                resolution=resolution.value,
                scanned_at=scanned_at or now,
                timestamp=now,
                scanned_by_user_id=scanned_by_user_id,
                idempotency_key=idempotency_key,
            )
        )
        raise ScanConflictError(card.id, stage, resolution.value)


def _failed(
    item: ScanReplayItem,
    message: str,
    code: ErrorCode,
) -> ScanReplayResult:
    return ScanReplayResult(
        card_id=item.card_id,
        idempotency_key=item.idempotency_key,
        success=False,
        error=message,
        error_code=code.value,
    )
