"""Click CLI commands for the kanban lifecycle service."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING

import click
from pydantic import BaseModel, ValidationError

from kanban.config import KanbanConfig

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from kanban.lifecycle.history import CardLifecycleEntry
    from kanban.lifecycle.types import ScanReplayResult


class _ReplayLocation(BaseModel):
    lat: float | None = None
    lng: float | None = None


class _ReplayItemIn(BaseModel):
    """One entry of a replay file."""

    card_id: str
    idempotency_key: str
    scanned_at: str
    location: _ReplayLocation | None = None


@click.group()
def cli() -> None:
    """Kanban: card lifecycle orchestration for replenishment loops."""


@cli.command()
def rules() -> None:
    """Print the card transition rule table."""
    from kanban.lifecycle.rules import TRANSITION_RULES

    click.echo("=== Card Transition Rules ===\n")
    for rule in TRANSITION_RULES:
        click.echo(f"{rule.from_stage.value} -> {rule.to_stage.value}")
        click.echo(f"  {rule.description}")
        click.echo(f"  Roles:       {', '.join(sorted(r.value for r in rule.allowed_roles))}")
        click.echo(
            f"  Loop types:  {', '.join(sorted(t.value for t in rule.allowed_loop_types))}"
        )
        click.echo(f"  Methods:     {', '.join(sorted(m.value for m in rule.allowed_methods))}")
        if rule.requires_linked_order:
            click.echo(
                "  Linked order: "
                + ", ".join(sorted(t.value for t in rule.linked_order_types))
            )
        click.echo("")


@cli.command()
def config() -> None:
    """Show current configuration."""
    cfg = KanbanConfig()

    click.echo("=== Kanban Configuration ===\n")

    click.echo(f"Log Level:    {cfg.log_level}")
    click.echo(f"Log Format:   {cfg.log_format}")
    click.echo(f"DB Path:      {cfg.db_path}")
    click.echo(f"Busy Timeout: {cfg.db_busy_timeout_ms} ms")
    click.echo("")

    click.echo("[Scan]")
    click.echo(f"  Dedupe Enabled:      {cfg.scan.dedupe_enabled}")
    click.echo(f"  Pending TTL:         {cfg.scan.pending_ttl_seconds}s")
    click.echo(f"  Completed TTL:       {cfg.scan.completed_ttl_seconds}s")
    click.echo(f"  Failed TTL:          {cfg.scan.failed_ttl_seconds}s")
    click.echo(f"  Max Replay Batch:    {cfg.scan.max_replay_batch_size}")
    click.echo("")

    click.echo("[Events]")
    click.echo(f"  Queue Max Size:      {cfg.events.queue_maxsize}")


@cli.command("init-db")
def init_db() -> None:
    """Create the database schema (tables, indexes, triggers)."""
    cfg = KanbanConfig()
    Path(cfg.db_path).parent.mkdir(parents=True, exist_ok=True)
    asyncio.run(_create_schema(cfg))
    click.echo(f"Schema created at {cfg.db_path}")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tenant", required=True, help="Tenant that captured the scans.")
@click.option("--user", default=None, help="User who captured the scans.")
def replay(file: Path, tenant: str, user: str | None) -> None:
    """Replay a JSON array of offline-captured scans."""
    cfg = KanbanConfig()

    try:
        raw = json.loads(file.read_text())
        if not isinstance(raw, list):
            raise click.ClickException("Replay file must contain a JSON array")
        items = [_ReplayItemIn.model_validate(entry) for entry in raw]
    except (json.JSONDecodeError, ValidationError) as e:
        raise click.ClickException(f"Invalid replay file: {e}") from e

    if len(items) > cfg.scan.max_replay_batch_size:
        raise click.ClickException(
            f"Batch of {len(items)} scans exceeds the limit of "
            f"{cfg.scan.max_replay_batch_size}"
        )

    results = asyncio.run(_run_replay(cfg, items, tenant, user))
    _print_replay_results(results)


@cli.command()
@click.argument("card_id")
@click.option("--tenant", required=True, help="Tenant that owns the card.")
def history(card_id: str, tenant: str) -> None:
    """Show the transition history of a card."""
    cfg = KanbanConfig()
    entries = asyncio.run(_load_history(cfg, card_id, tenant))
    if not entries:
        click.echo(f"No transitions recorded for card {card_id}")
        return
    _print_history(card_id, entries)


def _build_engine(cfg: KanbanConfig) -> AsyncEngine:
    from sqlalchemy.ext.asyncio import create_async_engine

    from kanban.models.base import register_engine_events

    engine = create_async_engine(cfg.database_url, echo=False)
    register_engine_events(engine.sync_engine, cfg.db_busy_timeout_ms)
    return engine


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    from sqlalchemy.ext.asyncio import async_sessionmaker

    return async_sessionmaker(engine, expire_on_commit=False)


async def _create_schema(cfg: KanbanConfig) -> None:
    from kanban.models import Base

    engine = _build_engine(cfg)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()


async def _run_replay(
    cfg: KanbanConfig,
    items: list[_ReplayItemIn],
    tenant: str,
    user: str | None,
) -> list[ScanReplayResult]:
    from kanban.events.memory import InMemoryEventBus
    from kanban.lifecycle.dedupe import ScanDedupeManager
    from kanban.lifecycle.manager import CardLifecycleManager
    from kanban.lifecycle.scan import ScanHandler
    from kanban.lifecycle.types import ScanLocation, ScanReplayItem
    from kanban.utils.logging import bind_tenant, setup_logging

    setup_logging(cfg.log_level, cfg.log_format)
    bind_tenant(tenant)

    engine = _build_engine(cfg)
    try:
        manager = CardLifecycleManager(
            _session_factory(engine),
            InMemoryEventBus(maxsize=cfg.events.queue_maxsize),
        )
        dedupe = ScanDedupeManager(cfg.scan) if cfg.scan.dedupe_enabled else None
        handler = ScanHandler(manager, dedupe=dedupe)
        return await handler.replay_scans(
            [
                ScanReplayItem(
                    card_id=item.card_id,
                    idempotency_key=item.idempotency_key,
                    scanned_at=item.scanned_at,
                    location=(
                        ScanLocation(lat=item.location.lat, lng=item.location.lng)
                        if item.location is not None
                        else None
                    ),
                )
                for item in items
            ],
            tenant_id=tenant,
            user_id=user,
        )
    finally:
        await engine.dispose()


async def _load_history(
    cfg: KanbanConfig,
    card_id: str,
    tenant: str,
) -> list[CardLifecycleEntry]:
    from kanban.lifecycle.history import LifecycleHistory

    engine = _build_engine(cfg)
    try:
        return await LifecycleHistory(_session_factory(engine)).get_card_lifecycle_events(
            card_id, tenant
        )
    finally:
        await engine.dispose()


def _print_replay_results(results: list[ScanReplayResult]) -> None:
    succeeded = sum(1 for r in results if r.success)
    click.echo(
        f"\nReplayed {len(results)} scans: {succeeded} succeeded, "
        f"{len(results) - succeeded} failed\n"
    )
    for r in results:
        if r.success:
            click.echo(f"  OK    {r.card_id} [{r.idempotency_key}] {r.message}")
        else:
            click.echo(
                f"  FAIL  {r.card_id} [{r.idempotency_key}] {r.error_code}: {r.error}"
            )


def _print_history(card_id: str, entries: list[CardLifecycleEntry]) -> None:
    click.echo(f"\nCard {card_id}\n")
    for entry in entries:
        t = entry.transition
        from_stage = t.from_stage.value if t.from_stage else "-"
        if entry.is_current_stage:
            duration = "(current)"
        else:
            duration = f"{entry.stage_duration_seconds}s"
        click.echo(
            f"  {t.transitioned_at}  cycle {t.cycle_number}  "
            f"{from_stage} -> {t.to_stage.value}  [{t.method.value}]  {duration}"
        )
