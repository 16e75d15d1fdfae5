"""Read-only queries over the transition ledger."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import literal_column, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kanban.lifecycle.types import CardStage, TransitionRecord
from kanban.models.kanban import CardTransitionModel
from kanban.utils.time import parse_timestamp, seconds_between

DEFAULT_PAGE_LIMIT = 100
FULL_CYCLE_KEY = "full_cycle"

# The ledger is append-only, so rowid is insertion order.
_LEDGER_SEQ = literal_column("card_stage_transition.rowid")


@dataclass(frozen=True)
class CardLifecycleEntry:
    """One ledger row plus how long the card stayed in the stage it entered.

    ``stage_duration_seconds`` is None for the stage the card is still in.
    """

    transition: TransitionRecord
    stage_duration_seconds: int | None
    is_current_stage: bool


@dataclass(frozen=True)
class LoopEventsPage:
    events: list[TransitionRecord]
    limit: int
    offset: int

    @property
    def count(self) -> int:
        return len(self.events)


@dataclass(frozen=True)
class StageVelocity:
    avg_hours: float
    count: int
    min_hours: float
    max_hours: float

    @classmethod
    def from_hours(cls, hours: list[float]) -> StageVelocity:
        return cls(
            avg_hours=round(sum(hours) / len(hours), 2),
            count=len(hours),
            min_hours=round(min(hours), 2),
            max_hours=round(max(hours), 2),
        )


@dataclass(frozen=True)
class LoopVelocity:
    """Stage-pair timings for a loop, keyed ``"<from>_to_<to>"`` and ``full_cycle``."""

    loop_id: str
    data_points: int
    completed_cycles: int
    stage_durations: dict[str, StageVelocity] = field(default_factory=dict)

    @property
    def sufficient(self) -> bool:
        return self.data_points >= 2


def _hours_between(start: str, end: str) -> float:
    return (parse_timestamp(end) - parse_timestamp(start)).total_seconds() / 3600


class LifecycleHistory:
    """Ledger queries. Every query is scoped to a tenant."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_card_history(
        self, card_id: str, tenant_id: str
    ) -> list[TransitionRecord]:
        """All transitions for a card, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardTransitionModel)
                .where(
                    CardTransitionModel.card_id == card_id,
                    CardTransitionModel.tenant_id == tenant_id,
                )
                .order_by(
                    CardTransitionModel.transitioned_at.asc(),
                    _LEDGER_SEQ.asc(),
                )
            )
            return [TransitionRecord.from_model(row) for row in result.scalars()]

    async def get_card_lifecycle_events(
        self, card_id: str, tenant_id: str
    ) -> list[CardLifecycleEntry]:
        history = await self.get_card_history(card_id, tenant_id)
        entries: list[CardLifecycleEntry] = []
        for i, record in enumerate(history):
            following = history[i + 1] if i + 1 < len(history) else None
            entries.append(
                CardLifecycleEntry(
                    transition=record,
                    stage_duration_seconds=(
                        seconds_between(record.transitioned_at, following.transitioned_at)
                        if following is not None
                        else None
                    ),
                    is_current_stage=following is None,
                )
            )
        return entries

    async def get_loop_lifecycle_events(
        self,
        loop_id: str,
        tenant_id: str,
        limit: int = DEFAULT_PAGE_LIMIT,
        offset: int = 0,
    ) -> LoopEventsPage:
        """Transitions across every card of a loop, newest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardTransitionModel)
                .where(
                    CardTransitionModel.loop_id == loop_id,
                    CardTransitionModel.tenant_id == tenant_id,
                )
                .order_by(CardTransitionModel.transitioned_at.desc(), _LEDGER_SEQ.desc())
                .limit(limit)
                .offset(offset)
            )
            events = [TransitionRecord.from_model(row) for row in result.scalars()]
        return LoopEventsPage(events=events, limit=limit, offset=offset)

    async def get_loop_velocity(self, loop_id: str, tenant_id: str) -> LoopVelocity:
        """Average/min/max hours per stage pair, plus triggered -> restocked."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(CardTransitionModel)
                .where(
                    CardTransitionModel.loop_id == loop_id,
                    CardTransitionModel.tenant_id == tenant_id,
                )
                .order_by(
                    CardTransitionModel.card_id.asc(),
                    CardTransitionModel.transitioned_at.asc(),
                    _LEDGER_SEQ.asc(),
                )
            )
            records = [TransitionRecord.from_model(row) for row in result.scalars()]

        if len(records) < 2:
            return LoopVelocity(loop_id=loop_id, data_points=len(records), completed_cycles=0)

        pair_hours: dict[str, list[float]] = defaultdict(list)
        previous: TransitionRecord | None = None
        for record in records:
            if (
                previous is not None
                and previous.card_id == record.card_id
                and previous.cycle_number == record.cycle_number
                and record.from_stage is not None
            ):
                key = f"{record.from_stage.value}_to_{record.to_stage.value}"
                pair_hours[key].append(
                    _hours_between(previous.transitioned_at, record.transitioned_at)
                )
            previous = record

        # (card, cycle) -> [first triggered, last restocked]
        cycles: dict[tuple[str, int], list[str | None]] = defaultdict(lambda: [None, None])
        for record in records:
            bounds = cycles[(record.card_id, record.cycle_number)]
            if record.to_stage == CardStage.TRIGGERED and bounds[0] is None:
                bounds[0] = record.transitioned_at
            if record.to_stage == CardStage.RESTOCKED:
                bounds[1] = record.transitioned_at
        full_cycles = [
            _hours_between(start, end)
            for start, end in cycles.values()
            if start is not None and end is not None
        ]

        durations = {key: StageVelocity.from_hours(hours) for key, hours in pair_hours.items()}
        if full_cycles:
            durations[FULL_CYCLE_KEY] = StageVelocity.from_hours(full_cycles)

        return LoopVelocity(
            loop_id=loop_id,
            data_points=len(records),
            completed_cycles=len(full_cycles),
            stage_durations=durations,
        )
