"""Shared test fixtures for the kanban lifecycle service."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from kanban.events.memory import InMemoryEventBus
from kanban.lifecycle.history import LifecycleHistory
from kanban.lifecycle.manager import CardLifecycleManager
from kanban.lifecycle.scan import ScanHandler
from kanban.loops.quantity import QuantityAccountant
from kanban.models.base import Base


@pytest.fixture
async def db_session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Create in-memory async SQLite with all tables and triggers."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus(maxsize=100)


@pytest.fixture
def manager(
    db_session_factory: async_sessionmaker[AsyncSession],
    event_bus: InMemoryEventBus,
) -> CardLifecycleManager:
    return CardLifecycleManager(db_session_factory, event_bus)


@pytest.fixture
def scan_handler(manager: CardLifecycleManager) -> ScanHandler:
    return ScanHandler(manager)


@pytest.fixture
def accountant(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> QuantityAccountant:
    return QuantityAccountant(db_session_factory)


@pytest.fixture
def history(
    db_session_factory: async_sessionmaker[AsyncSession],
) -> LifecycleHistory:
    return LifecycleHistory(db_session_factory)
