"""In-process scan dedupe store.

Fast-path rejection of duplicate QR scans before they reach the database.
Each (tenant, card, idempotency key) claim moves pending -> completed or
pending -> failed and expires after a per-status TTL. A failed claim may be
retried once it is seen again. The unique index on the transition ledger
remains the authoritative guard; this only saves round trips.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog

from kanban.config import ScanConfig

log = structlog.get_logger()


class DedupeStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DedupeDecision:
    """Outcome of check_and_claim()."""

    allowed: bool
    existing_status: DedupeStatus | None = None
    cached_result: Any = None


@dataclass
class _Claim:
    status: DedupeStatus
    expires_at: float
    result: Any = None
    error: str | None = None


_Key = tuple[str, str, str]


class ScanDedupeManager:
    """TTL-bounded claim table guarded by an asyncio.Lock."""

    def __init__(
        self,
        config: ScanConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ScanConfig()
        self._clock = clock
        self._claims: dict[_Key, _Claim] = {}
        self._lock = asyncio.Lock()

    def _ttl(self, status: DedupeStatus) -> int:
        if status == DedupeStatus.PENDING:
            return self._config.pending_ttl_seconds
        if status == DedupeStatus.COMPLETED:
            return self._config.completed_ttl_seconds
        return self._config.failed_ttl_seconds

    def _live(self, key: _Key) -> _Claim | None:
        claim = self._claims.get(key)
        if claim is None:
            return None
        if claim.expires_at <= self._clock():
            del self._claims[key]
            return None
        return claim

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, c in self._claims.items() if c.expires_at <= now]
        for key in expired:
            del self._claims[key]
        if expired:
            log.debug("scan_dedupe_swept", expired=len(expired))

    async def check_and_claim(
        self,
        tenant_id: str,
        card_id: str,
        idempotency_key: str,
    ) -> DedupeDecision:
        """Claim the key as pending, or report why it cannot be claimed."""
        key = (tenant_id, card_id, idempotency_key)
        async with self._lock:
            self._sweep()
            existing = self._live(key)
            if existing is not None:
                if existing.status == DedupeStatus.COMPLETED:
                    log.info(
                        "scan_dedupe_cached",
                        card_id=card_id,
                        idempotency_key=idempotency_key,
                    )
                    return DedupeDecision(
                        allowed=False,
                        existing_status=DedupeStatus.COMPLETED,
                        cached_result=existing.result,
                    )
                if existing.status == DedupeStatus.PENDING:
                    log.warning(
                        "scan_dedupe_in_progress",
                        card_id=card_id,
                        idempotency_key=idempotency_key,
                    )
                    return DedupeDecision(
                        allowed=False,
                        existing_status=DedupeStatus.PENDING,
                    )
                log.info(
                    "scan_dedupe_retry_after_failure",
                    card_id=card_id,
                    idempotency_key=idempotency_key,
                    previous_error=existing.error,
                )

            self._claims[key] = _Claim(
                status=DedupeStatus.PENDING,
                expires_at=self._clock() + self._ttl(DedupeStatus.PENDING),
            )
            return DedupeDecision(allowed=True)

    async def mark_completed(
        self,
        tenant_id: str,
        card_id: str,
        idempotency_key: str,
        result: Any = None,
    ) -> None:
        await self._settle(
            (tenant_id, card_id, idempotency_key),
            DedupeStatus.COMPLETED,
            result=result,
        )

    async def mark_failed(
        self,
        tenant_id: str,
        card_id: str,
        idempotency_key: str,
        error: str,
    ) -> None:
        await self._settle(
            (tenant_id, card_id, idempotency_key),
            DedupeStatus.FAILED,
            error=error,
        )

    async def _settle(
        self,
        key: _Key,
        status: DedupeStatus,
        result: Any = None,
        error: str | None = None,
    ) -> None:
        async with self._lock:
            # An expired claim is not resurrected.
            if self._live(key) is None:
                return
            self._claims[key] = _Claim(
                status=status,
                expires_at=self._clock() + self._ttl(status),
                result=result,
                error=error,
            )
        log.debug(
            "scan_dedupe_settled",
            card_id=key[1],
            idempotency_key=key[2],
            status=status.value,
        )

    def __len__(self) -> int:
        return len(self._claims)
