"""
Volume aggregator: applies qualifying sales volume to the binary tree.

Every posted event is stored once (unique event_id) and rolled up to each
ancestor's leg counter with an atomic in-database increment. The stored
events are the source the cache is rebuilt from when it drifts.
"""

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.network_node import NetworkNode
from app.models.volume_event import VolumeEvent
from app.schemas.volume import (
    RebuildResponse,
    RejectedEvent,
    VolumeBatchResponse,
    VolumeDrift,
    VolumeEventRequest,
    VolumePostResponse,
)
from app.services import tree_store

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

_LEG_COLUMNS = {
    "left": ("left_leg_volume", "left_flushed_volume"),
    "right": ("right_leg_volume", "right_flushed_volume"),
}


async def post_volume(
    db: AsyncSession,
    event_id: str,
    affiliate_id: uuid.UUID,
    amount: Decimal,
    occurred_at: datetime,
) -> VolumePostResponse:
    """Apply one sales event to the tree, exactly once per event_id.

    1. Skip if the event was already applied.
    2. Reject if the affiliate has no node yet (caller retries later).
    3. Store the event (savepoint: a concurrent duplicate is reported, not raised).
    4. Add the amount to the node's personal volume and to the matching leg
       of every ancestor.
    """

    # 1. Dedup
    result = await db.execute(
        select(VolumeEvent.id).where(VolumeEvent.event_id == event_id)
    )
    if result.scalar_one_or_none() is not None:
        logger.info("Volume event %s already applied, skipping", event_id)
        return VolumePostResponse(
            event_id=event_id, node_id=None, duplicate=True, ancestors_updated=0
        )

    # 2. Node
    node = await tree_store.get_node_by_affiliate(db, affiliate_id)
    if node is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Affiliate is not placed in the network",
        )

    # 3. Event row
    try:
        async with db.begin_nested():
            db.add(
                VolumeEvent(
                    event_id=event_id,
                    node_id=node.id,
                    affiliate_id=affiliate_id,
                    amount=amount,
                    occurred_at=occurred_at,
                )
            )
            await db.flush()
    except IntegrityError:
        logger.info("Volume event %s applied concurrently, skipping", event_id)
        return VolumePostResponse(
            event_id=event_id, node_id=node.id, duplicate=True, ancestors_updated=0
        )

    # 4. Personal volume + upline
    await db.execute(
        update(NetworkNode)
        .where(NetworkNode.id == node.id)
        .values(personal_volume=NetworkNode.personal_volume + amount)
    )
    updated = await apply_to_upline(db, node, amount)

    logger.debug(
        "Volume event %s: %s posted for node %s, %d ancestors updated",
        event_id, amount, node.id, updated,
    )
    return VolumePostResponse(
        event_id=event_id, node_id=node.id, duplicate=False, ancestors_updated=updated
    )


async def post_volume_batch(
    db: AsyncSession, events: list[VolumeEventRequest]
) -> VolumeBatchResponse:
    """Apply a list of ledger events; a rejected event does not affect the others."""
    applied: list[VolumePostResponse] = []
    duplicates: list[str] = []
    rejected: list[RejectedEvent] = []

    for event in events:
        try:
            async with db.begin_nested():
                result = await post_volume(
                    db,
                    event_id=event.event_id,
                    affiliate_id=event.affiliate_id,
                    amount=event.volume_amount,
                    occurred_at=event.occurred_at,
                )
        except HTTPException as exc:
            logger.warning("Volume event %s rejected: %s", event.event_id, exc.detail)
            rejected.append(RejectedEvent(event_id=event.event_id, detail=str(exc.detail)))
            continue

        if result.duplicate:
            duplicates.append(event.event_id)
        else:
            applied.append(result)

    return VolumeBatchResponse(applied=applied, duplicates=duplicates, rejected=rejected)


async def apply_to_upline(db: AsyncSession, node: NetworkNode, amount: Decimal) -> int:
    """Walk up the binary tree from `node`, adding `amount` to the correct leg of each ancestor.

    For each ancestor:
    - If `node` falls on the LEFT side -> ancestor.left_leg_volume += amount
    - If `node` falls on the RIGHT side -> ancestor.right_leg_volume += amount

    Example:
        Tree:       A
                   / \\
                  B   C
                 /
                D  <- node (event of 300)

        D is left child of B -> B.left_leg_volume += 300
        B is left child of A -> A.left_leg_volume += 300

    Returns the number of ancestors updated.
    """
    current = node
    updated = 0

    while current.parent_id is not None:
        parent = await tree_store.get_node(db, current.parent_id)
        if parent is None:
            logger.error(
                "Broken tree link: node %s points at missing parent %s",
                current.id, current.parent_id,
            )
            break

        volume_col, _ = _LEG_COLUMNS[current.leg]
        await db.execute(
            update(NetworkNode)
            .where(NetworkNode.id == parent.id)
            .values(**{volume_col: getattr(NetworkNode, volume_col) + amount})
        )
        updated += 1
        current = parent

    return updated


def released_settled(leg_volume: Decimal, flushed: Decimal, amount: Decimal) -> Decimal:
    """Settled volume that has to leave a leg when `amount` of its volume moves out.

    Unsettled volume leaves first. Settled volume only goes once what stays
    behind can no longer cover it.
    """
    return max(ZERO, flushed - (leg_volume - amount))


async def _locked_upline(db: AsyncSession, node: NetworkNode):
    """Yield (ancestor, leg the path arrives on) from the parent up, each row locked."""
    current = node
    while current.parent_id is not None:
        parent = await tree_store.get_node(db, current.parent_id, for_update=True)
        if parent is None:
            logger.error(
                "Broken tree link: node %s points at missing parent %s",
                current.id, current.parent_id,
            )
            return
        yield parent, current.leg
        current = parent


async def detach_from_upline(
    db: AsyncSession, node: NetworkNode, amount: Decimal
) -> dict[uuid.UUID, Decimal]:
    """Take a moving subtree's `amount` out of every ancestor above `node`.

    Returns, per ancestor id, the settled volume that left with it.
    """
    released: dict[uuid.UUID, Decimal] = {}
    async for parent, leg in _locked_upline(db, node):
        volume_col, flushed_col = _LEG_COLUMNS[leg]
        leg_volume = getattr(parent, volume_col)
        flushed = getattr(parent, flushed_col)
        settled = released_settled(leg_volume, flushed, amount)

        setattr(parent, volume_col, leg_volume - amount)
        setattr(parent, flushed_col, flushed - settled)
        if settled > 0:
            released[parent.id] = settled

    await db.flush()
    return released


async def attach_to_upline(
    db: AsyncSession,
    node: NetworkNode,
    amount: Decimal,
    settled: dict[uuid.UUID, Decimal],
) -> int:
    """Add a moved subtree's `amount` to every ancestor above `node`.

    Ancestors that already settled part of it under the old position keep
    that part settled (`settled`, as returned by detach_from_upline). For
    every other ancestor the volume is new.
    """
    updated = 0
    async for parent, leg in _locked_upline(db, node):
        volume_col, flushed_col = _LEG_COLUMNS[leg]
        setattr(parent, volume_col, getattr(parent, volume_col) + amount)
        if parent.id in settled:
            setattr(parent, flushed_col, getattr(parent, flushed_col) + settled[parent.id])
        updated += 1

    await db.flush()
    return updated


def compute_leg_volumes(
    arena: dict[uuid.UUID, NetworkNode],
    event_totals: dict[uuid.UUID, Decimal],
) -> dict[uuid.UUID, tuple[Decimal, Decimal, Decimal]]:
    """Recompute (personal, left, right) for every node from per-node event totals."""
    totals = {node_id: [ZERO, ZERO, ZERO] for node_id in arena}

    for node_id, amount in event_totals.items():
        if node_id not in arena:
            logger.error("Volume events reference unknown node %s", node_id)
            continue
        totals[node_id][0] += amount

        current = arena[node_id]
        steps = 0
        while current.parent_id is not None and current.parent_id in arena:
            steps += 1
            if steps > len(arena):
                raise RuntimeError(f"Cycle detected above node {node_id}")
            parent = arena[current.parent_id]
            totals[parent.id][1 if current.leg == "left" else 2] += amount
            current = parent

    return {node_id: tuple(values) for node_id, values in totals.items()}


async def rebuild_leg_volumes(db: AsyncSession, repair: bool = True) -> RebuildResponse:
    """Rebuild every cached volume from the stored events and report the drift.

    With repair=False nothing is written (verification only). With repair=True
    all node rows are locked for the duration so no posting interleaves.
    """
    if repair:
        result = await db.execute(select(NetworkNode).with_for_update())
        arena = {node.id: node for node in result.scalars().all()}
    else:
        arena = await tree_store.load_arena(db)

    result = await db.execute(
        select(VolumeEvent.node_id, func.sum(VolumeEvent.amount), func.count(VolumeEvent.id))
        .group_by(VolumeEvent.node_id)
    )
    event_totals: dict[uuid.UUID, Decimal] = defaultdict(lambda: ZERO)
    events_replayed = 0
    for node_id, total, count in result:
        event_totals[node_id] += Decimal(total)
        events_replayed += count

    expected = compute_leg_volumes(arena, event_totals)

    drift: list[VolumeDrift] = []
    for node_id, (personal, left, right) in expected.items():
        node = arena[node_id]
        for field, value in (
            ("personal_volume", personal),
            ("left_leg_volume", left),
            ("right_leg_volume", right),
        ):
            cached = getattr(node, field)
            if cached != value:
                drift.append(
                    VolumeDrift(node_id=node_id, field=field, cached=cached, expected=value)
                )
                if repair:
                    setattr(node, field, value)

    if repair and drift:
        await db.flush()

    if drift:
        logger.warning(
            "Leg volume drift on %d fields across %d nodes (repaired=%s)",
            len(drift), len({d.node_id for d in drift}), repair,
        )
    else:
        logger.info("Leg volumes consistent across %d nodes", len(arena))

    return RebuildResponse(
        nodes_checked=len(arena),
        events_replayed=events_replayed,
        drift=drift,
        repaired=repair and bool(drift),
    )


async def verify_leg_volumes(db: AsyncSession) -> RebuildResponse:
    """Drift report only; nothing is written."""
    return await rebuild_leg_volumes(db, repair=False)
