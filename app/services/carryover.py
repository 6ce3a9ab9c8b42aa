"""Carryover ledger: per-node, per-leg unmatched volume and its remaining lifetime."""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.carryover import CarryoverEntry

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class LegOutcome:
    """What a cycle leaves on one leg: kept amount, its lifetime, and what was lost."""

    amount: Decimal = ZERO
    cycles_remaining: int = 0
    forfeited: Decimal = ZERO

    @property
    def is_empty(self) -> bool:
        return self.amount <= 0 or self.cycles_remaining <= 0


async def get_entries(db: AsyncSession, node_id: uuid.UUID) -> list[CarryoverEntry]:
    result = await db.execute(
        select(CarryoverEntry).where(CarryoverEntry.node_id == node_id)
    )
    return list(result.scalars().all())


async def load_all_entries(
    db: AsyncSession,
) -> dict[tuple[uuid.UUID, str], CarryoverEntry]:
    """All live entries keyed by (node_id, leg)."""
    result = await db.execute(select(CarryoverEntry))
    return {(entry.node_id, entry.leg): entry for entry in result.scalars().all()}


async def apply_outcome(
    db: AsyncSession,
    node_id: uuid.UUID,
    cycle_id: str,
    leg: str,
    outcome: LegOutcome,
) -> CarryoverEntry | None:
    """Write a cycle's outcome for one leg: replace, age, or delete the entry."""
    result = await db.execute(
        select(CarryoverEntry)
        .where(CarryoverEntry.node_id == node_id, CarryoverEntry.leg == leg)
        .with_for_update()
    )
    entry = result.scalar_one_or_none()

    if outcome.forfeited > 0:
        logger.info(
            "Carryover of %s on %s leg of node %s expired in cycle %s",
            outcome.forfeited, leg, node_id, cycle_id,
        )

    if outcome.is_empty:
        if entry is not None:
            await db.delete(entry)
        return None

    if entry is None:
        entry = CarryoverEntry(node_id=node_id, leg=leg)
        db.add(entry)

    entry.amount = outcome.amount
    entry.cycles_remaining = outcome.cycles_remaining
    entry.last_cycle_id = cycle_id
    return entry
