"""
Binary commission cycle.

A cycle is identified by an explicit cycle_id and runs in three phases:

1. Open: create the cycle row and freeze, in one transaction, a snapshot of
   every eligible node's open leg volume and carryover as of the cutoff.
2. Settle: each snapshot row is settled in its own transaction. The record
   is keyed by (node_id, cycle_id), so a retry skips nodes already done and
   recomputes the rest from the same snapshot.
3. Close: store the counters and send commission notices.

Matching per node:
    effective = open volume + carryover          (per leg)
    matched   = min(effective_left, effective_right)
    raw       = matched * percentage / 100
    capped    = min(raw, cap_per_cycle)           (only this is paid)
The stronger leg keeps `effective - matched` as carryover with a full
lifetime. Carryover that sits idle (nothing matched, nothing new) loses one
cycle of lifetime per run and is forfeited when it reaches zero.
"""

import logging
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.base import utcnow
from app.models.audit_log import AuditLog
from app.models.carryover import CarryoverEntry
from app.models.commission import (
    CommissionAdjustment,
    CommissionCycle,
    CommissionRecord,
    CycleSnapshot,
)
from app.models.network_node import NetworkNode
from app.models.payout import PayoutInstruction
from app.models.volume_event import VolumeEvent
from app.services import carryover, directory, tree_store
from app.services.carryover import LegOutcome
from app.services.email import send_binary_commission_notice

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")


# ── Pure settlement ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class NodeSnapshot:
    node_id: uuid.UUID
    affiliate_id: uuid.UUID
    left_total: Decimal
    right_total: Decimal
    left_fresh: Decimal
    right_fresh: Decimal
    left_carry: Decimal = ZERO
    right_carry: Decimal = ZERO
    left_carry_cycles: int = 0
    right_carry_cycles: int = 0

    @property
    def left_effective(self) -> Decimal:
        return self.left_fresh + self.left_carry

    @property
    def right_effective(self) -> Decimal:
        return self.right_fresh + self.right_carry

    @classmethod
    def from_row(cls, row: CycleSnapshot) -> "NodeSnapshot":
        return cls(
            node_id=row.node_id,
            affiliate_id=row.affiliate_id,
            left_total=row.left_total,
            right_total=row.right_total,
            left_fresh=row.left_fresh,
            right_fresh=row.right_fresh,
            left_carry=row.left_carry,
            right_carry=row.right_carry,
            left_carry_cycles=row.left_carry_cycles,
            right_carry_cycles=row.right_carry_cycles,
        )


@dataclass(frozen=True)
class Settlement:
    left_volume: Decimal
    right_volume: Decimal
    matched_volume: Decimal
    commission_amount: Decimal
    capped_amount: Decimal
    left: LegOutcome
    right: LegOutcome

    @property
    def forfeited_volume(self) -> Decimal:
        return self.left.forfeited + self.right.forfeited


def compute_commission(
    matched: Decimal, percentage: Decimal, cap_per_cycle: Decimal
) -> tuple[Decimal, Decimal]:
    """Return (raw, capped) commission for a matched volume."""
    raw = (matched * percentage / Decimal("100")).quantize(CENT, rounding=ROUND_HALF_UP)
    return raw, min(raw, cap_per_cycle)


def settle_leg(
    fresh: Decimal,
    carry: Decimal,
    carry_cycles: int,
    matched: Decimal,
    max_cycles: int,
) -> LegOutcome:
    excess = fresh + carry - matched
    if excess <= 0:
        return LegOutcome()

    if matched > 0 or fresh > 0:
        return LegOutcome(amount=excess, cycles_remaining=max_cycles)

    # Idle carryover: nothing matched and nothing new arrived on this leg
    remaining = carry_cycles - 1
    if remaining <= 0:
        return LegOutcome(forfeited=excess)
    return LegOutcome(amount=excess, cycles_remaining=remaining)


def settle_node(
    snapshot: NodeSnapshot,
    percentage: Decimal,
    cap_per_cycle: Decimal,
    max_cycles: int,
) -> Settlement:
    left = snapshot.left_effective
    right = snapshot.right_effective
    matched = min(left, right)
    raw, capped = compute_commission(matched, percentage, cap_per_cycle)

    return Settlement(
        left_volume=left,
        right_volume=right,
        matched_volume=matched,
        commission_amount=raw,
        capped_amount=capped,
        left=settle_leg(
            snapshot.left_fresh, snapshot.left_carry, snapshot.left_carry_cycles,
            matched, max_cycles,
        ),
        right=settle_leg(
            snapshot.right_fresh, snapshot.right_carry, snapshot.right_carry_cycles,
            matched, max_cycles,
        ),
    )


def build_snapshots(
    arena: dict[uuid.UUID, NetworkNode],
    late_events: Iterable[tuple[uuid.UUID, Decimal]],
    entries: dict[tuple[uuid.UUID, str], CarryoverEntry],
    eligible: Callable[[NetworkNode, Decimal], bool],
) -> list[NodeSnapshot]:
    """Open leg volume and carryover of every eligible node as of the cutoff.

    `late_events` are (node_id, amount) of events stamped at or after the
    cutoff that are already in the cache; they are taken back out of every
    ancestor's totals. `eligible(node, personal_at_cutoff)` filters nodes.
    """
    totals = {
        node_id: [node.personal_volume, node.left_leg_volume, node.right_leg_volume]
        for node_id, node in arena.items()
    }

    for node_id, amount in late_events:
        if node_id not in arena:
            continue
        totals[node_id][0] -= amount
        current = arena[node_id]
        while current.parent_id is not None and current.parent_id in arena:
            parent = arena[current.parent_id]
            totals[parent.id][1 if current.leg == "left" else 2] -= amount
            current = parent

    snapshots = []
    for node_id, node in arena.items():
        personal, left_total, right_total = totals[node_id]
        if not eligible(node, personal):
            continue

        left_entry = entries.get((node_id, "left"))
        right_entry = entries.get((node_id, "right"))
        snapshot = NodeSnapshot(
            node_id=node_id,
            affiliate_id=node.affiliate_id,
            left_total=left_total,
            right_total=right_total,
            left_fresh=max(left_total - node.left_flushed_volume, ZERO),
            right_fresh=max(right_total - node.right_flushed_volume, ZERO),
            left_carry=left_entry.amount if left_entry else ZERO,
            right_carry=right_entry.amount if right_entry else ZERO,
            left_carry_cycles=left_entry.cycles_remaining if left_entry else 0,
            right_carry_cycles=right_entry.cycles_remaining if right_entry else 0,
        )
        if snapshot.left_effective <= 0 and snapshot.right_effective <= 0:
            continue
        snapshots.append(snapshot)

    return snapshots


# ── Cycle orchestration ──────────────────────────────────────────────────

@dataclass
class CycleRunReport:
    cycle: CommissionCycle
    records: list[CommissionRecord] = field(default_factory=list)
    settled_node_ids: list[uuid.UUID] = field(default_factory=list)
    failed_node_ids: list[uuid.UUID] = field(default_factory=list)
    skipped_node_ids: list[uuid.UUID] = field(default_factory=list)


async def run_cycle(
    session_factory,
    cycle_id: str,
    percentage: Decimal,
    cap_per_cycle: Decimal,
    cutoff_at: datetime | None = None,
    max_carryover_cycles: int | None = None,
) -> CycleRunReport:
    """Run (or resume) the binary cycle `cycle_id` over the whole network.

    Safe to call again with the same cycle_id and parameters: settled nodes
    are skipped and the others are settled from the original snapshot.
    """
    if max_carryover_cycles is None:
        max_carryover_cycles = settings.BINARY_MAX_CARRYOVER_CYCLES

    async with session_factory() as db:
        async with db.begin():
            cycle = await open_cycle(
                db, cycle_id, percentage, cap_per_cycle, cutoff_at, max_carryover_cycles
            )
        result = await db.execute(
            select(CycleSnapshot).where(CycleSnapshot.cycle_id == cycle_id)
        )
        snapshots = [NodeSnapshot.from_row(row) for row in result.scalars().all()]

    logger.info(
        "Binary cycle %s: settling %d nodes (cutoff %s, %s%%, cap %s)",
        cycle_id, len(snapshots), cycle.cutoff_at.isoformat(),
        cycle.percentage, cycle.cap_per_cycle,
    )

    report = CycleRunReport(cycle=cycle)
    for snapshot in snapshots:
        try:
            record = await _settle_in_transaction(session_factory, cycle, snapshot)
        except Exception:
            logger.exception(
                "Binary settlement failed for node %s in cycle %s",
                snapshot.node_id, cycle_id,
            )
            report.failed_node_ids.append(snapshot.node_id)
            continue

        if record is None:
            report.skipped_node_ids.append(snapshot.node_id)
        else:
            report.settled_node_ids.append(snapshot.node_id)

    async with session_factory() as db:
        async with db.begin():
            cycle = await _close_cycle(db, cycle_id, len(report.failed_node_ids))
            result = await db.execute(
                select(CommissionRecord)
                .where(CommissionRecord.cycle_id == cycle_id)
                .order_by(CommissionRecord.computed_at)
            )
            report.records = list(result.scalars().all())
            report.cycle = cycle

        settled = set(report.settled_node_ids)
        newly_paid = [
            r for r in report.records if r.node_id in settled and r.capped_amount > 0
        ]
        await _notify_earners(db, newly_paid)

    logger.info(
        "Binary cycle %s finished: %d settled, %d skipped, %d failed",
        cycle_id, len(report.settled_node_ids), len(report.skipped_node_ids),
        len(report.failed_node_ids),
    )
    return report


async def open_cycle(
    db: AsyncSession,
    cycle_id: str,
    percentage: Decimal,
    cap_per_cycle: Decimal,
    cutoff_at: datetime | None,
    max_carryover_cycles: int,
) -> CommissionCycle:
    """Return the cycle row, creating it and its snapshot on the first run."""
    if cutoff_at is not None and cutoff_at.tzinfo is None:
        cutoff_at = cutoff_at.replace(tzinfo=timezone.utc)

    cycle = await _get_cycle_for_update(db, cycle_id)
    if cycle is not None:
        return _resume_cycle(cycle, percentage, cap_per_cycle, cutoff_at)

    cycle = CommissionCycle(
        cycle_id=cycle_id,
        cutoff_at=cutoff_at or utcnow(),
        percentage=percentage,
        cap_per_cycle=cap_per_cycle,
        max_carryover_cycles=max_carryover_cycles,
        status="running",
        started_at=utcnow(),
    )
    try:
        async with db.begin_nested():
            db.add(cycle)
            await db.flush()
    except IntegrityError:
        # Another run created it first; its snapshot is committed by now
        logger.info("Binary cycle %s opened concurrently", cycle_id)
        existing = await _get_cycle_for_update(db, cycle_id)
        if existing is None:
            raise
        return _resume_cycle(existing, percentage, cap_per_cycle, cutoff_at)

    snapshots = await _take_snapshot(db, cycle.cutoff_at)
    for snap in snapshots:
        db.add(
            CycleSnapshot(
                cycle_id=cycle_id,
                node_id=snap.node_id,
                affiliate_id=snap.affiliate_id,
                left_total=snap.left_total,
                right_total=snap.right_total,
                left_fresh=snap.left_fresh,
                right_fresh=snap.right_fresh,
                left_carry=snap.left_carry,
                right_carry=snap.right_carry,
                left_carry_cycles=snap.left_carry_cycles,
                right_carry_cycles=snap.right_carry_cycles,
            )
        )
    cycle.nodes_total = len(snapshots)
    await db.flush()

    logger.info("Binary cycle %s opened with %d nodes", cycle_id, len(snapshots))
    return cycle


async def _get_cycle_for_update(db: AsyncSession, cycle_id: str) -> CommissionCycle | None:
    result = await db.execute(
        select(CommissionCycle)
        .where(CommissionCycle.cycle_id == cycle_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _resume_cycle(
    cycle: CommissionCycle,
    percentage: Decimal,
    cap_per_cycle: Decimal,
    cutoff_at: datetime | None,
) -> CommissionCycle:
    if (
        cycle.percentage != percentage
        or cycle.cap_per_cycle != cap_per_cycle
        or (cutoff_at is not None and cycle.cutoff_at != cutoff_at)
    ):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cycle {cycle.cycle_id} already exists with different parameters",
        )
    logger.info("Resuming binary cycle %s (status %s)", cycle.cycle_id, cycle.status)
    cycle.status = "running"
    return cycle


async def _take_snapshot(db: AsyncSession, cutoff_at: datetime) -> list[NodeSnapshot]:
    arena = await tree_store.load_arena(db)
    entries = await carryover.load_all_entries(db)

    result = await db.execute(
        select(VolumeEvent.node_id, VolumeEvent.amount).where(
            VolumeEvent.occurred_at >= cutoff_at
        )
    )
    late_events = [(row.node_id, row.amount) for row in result]

    active = await directory.active_affiliate_ids(
        db, {node.affiliate_id for node in arena.values()}
    )
    min_personal = settings.BINARY_MIN_PERSONAL_VOLUME

    def eligible(node: NetworkNode, personal: Decimal) -> bool:
        return node.affiliate_id in active and personal >= min_personal

    return build_snapshots(arena, late_events, entries, eligible)


async def _settle_in_transaction(
    session_factory, cycle: CommissionCycle, snapshot: NodeSnapshot
) -> CommissionRecord | None:
    async with session_factory() as db:
        async with db.begin():
            return await settle_snapshot(db, cycle, snapshot)


async def settle_snapshot(
    db: AsyncSession, cycle: CommissionCycle, snapshot: NodeSnapshot
) -> CommissionRecord | None:
    """Settle one node for one cycle. Returns None when there is nothing to do."""
    node = await tree_store.get_node(db, snapshot.node_id, for_update=True)
    if node is None:
        raise LookupError(f"Network node {snapshot.node_id} disappeared")

    result = await db.execute(
        select(CommissionRecord.id).where(
            CommissionRecord.node_id == snapshot.node_id,
            CommissionRecord.cycle_id == cycle.cycle_id,
        )
    )
    if result.scalar_one_or_none() is not None:
        return None

    if node.flushed_through is not None and node.flushed_through >= cycle.cutoff_at:
        logger.warning(
            "Node %s already settled through %s, skipping cycle %s",
            node.id, node.flushed_through.isoformat(), cycle.cycle_id,
        )
        return None

    settlement = settle_node(
        snapshot, cycle.percentage, cycle.cap_per_cycle, cycle.max_carryover_cycles
    )
    now = utcnow()

    record = CommissionRecord(
        node_id=node.id,
        affiliate_id=node.affiliate_id,
        cycle_id=cycle.cycle_id,
        left_volume=settlement.left_volume,
        right_volume=settlement.right_volume,
        matched_volume=settlement.matched_volume,
        percentage=cycle.percentage,
        commission_amount=settlement.commission_amount,
        capped_amount=settlement.capped_amount,
        carryover_left=settlement.left.amount,
        carryover_right=settlement.right.amount,
        forfeited_volume=settlement.forfeited_volume,
        computed_at=now,
    )
    db.add(record)

    await carryover.apply_outcome(db, node.id, cycle.cycle_id, "left", settlement.left)
    await carryover.apply_outcome(db, node.id, cycle.cycle_id, "right", settlement.right)

    # Everything up to the cutoff is now either paid or carried
    node.left_flushed_volume = max(node.left_flushed_volume, snapshot.left_total)
    node.right_flushed_volume = max(node.right_flushed_volume, snapshot.right_total)
    node.flushed_through = cycle.cutoff_at

    if settlement.capped_amount > 0:
        db.add(
            PayoutInstruction(
                node_id=node.id,
                affiliate_id=node.affiliate_id,
                cycle_id=cycle.cycle_id,
                amount=settlement.capped_amount,
                computed_at=now,
            )
        )

    await db.flush()

    if settlement.capped_amount < settlement.commission_amount:
        logger.info(
            "Node %s capped in cycle %s: %s -> %s",
            node.id, cycle.cycle_id, settlement.commission_amount, settlement.capped_amount,
        )
    return record


async def _close_cycle(db: AsyncSession, cycle_id: str, failed: int) -> CommissionCycle:
    result = await db.execute(
        select(CommissionCycle)
        .where(CommissionCycle.cycle_id == cycle_id)
        .with_for_update()
    )
    cycle = result.scalar_one()

    result = await db.execute(
        select(CommissionRecord.id).where(CommissionRecord.cycle_id == cycle_id)
    )
    cycle.nodes_processed = len(result.scalars().all())
    cycle.nodes_failed = failed
    cycle.status = "completed_with_errors" if failed else "completed"
    cycle.completed_at = utcnow()
    await db.flush()
    return cycle


async def _notify_earners(db: AsyncSession, records: list[CommissionRecord]) -> None:
    """Best-effort commission emails; failures are logged and never raised."""
    if not records:
        return
    contacts = await directory.get_contacts(db, {r.affiliate_id for r in records})
    for record in records:
        contact = contacts.get(record.affiliate_id)
        if contact is None:
            continue
        email, name = contact
        try:
            send_binary_commission_notice(
                to_email=email,
                full_name=name,
                cycle_id=record.cycle_id,
                matched_volume=str(record.matched_volume),
                amount=str(record.capped_amount),
            )
        except Exception:
            logger.exception("Failed to send commission notice for node %s", record.node_id)


# ── Queries and corrections ──────────────────────────────────────────────

async def get_cycle(db: AsyncSession, cycle_id: str) -> CommissionCycle:
    result = await db.execute(
        select(CommissionCycle).where(CommissionCycle.cycle_id == cycle_id)
    )
    cycle = result.scalar_one_or_none()
    if cycle is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Commission cycle not found",
        )
    return cycle


async def list_cycle_records(db: AsyncSession, cycle_id: str) -> list[CommissionRecord]:
    result = await db.execute(
        select(CommissionRecord)
        .where(CommissionRecord.cycle_id == cycle_id)
        .order_by(CommissionRecord.computed_at)
    )
    return list(result.scalars().all())


async def record_adjustment(
    db: AsyncSession,
    node_id: uuid.UUID,
    cycle_id: str,
    amount: Decimal,
    reason: str,
    actor_id: uuid.UUID,
) -> CommissionAdjustment:
    """Correct a written cycle with a compensating entry (records stay immutable)."""
    if amount == 0:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Adjustment amount must not be zero",
        )

    result = await db.execute(
        select(CommissionRecord).where(
            CommissionRecord.node_id == node_id,
            CommissionRecord.cycle_id == cycle_id,
        )
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Commission record not found",
        )

    adjustment = CommissionAdjustment(
        node_id=node_id,
        cycle_id=cycle_id,
        amount=amount,
        reason=reason,
        created_by=actor_id,
    )
    db.add(adjustment)
    await db.flush()

    db.add(
        PayoutInstruction(
            node_id=node_id,
            affiliate_id=record.affiliate_id,
            cycle_id=cycle_id,
            adjustment_id=adjustment.id,
            amount=amount,
            computed_at=utcnow(),
        )
    )
    db.add(
        AuditLog(
            user_id=actor_id,
            action="commission.adjust",
            resource_type="commission_record",
            resource_id=record.id,
            old_values={"capped_amount": str(record.capped_amount)},
            new_values={"adjustment": str(amount), "adjustment_id": str(adjustment.id)},
            reason=reason,
        )
    )
    await db.flush()

    logger.info(
        "Adjustment of %s recorded for node %s in cycle %s", amount, node_id, cycle_id
    )
    return adjustment
