"""
Placement resolver: lands a new affiliate in the sponsor's subtree.

Breadth-first spillover from the sponsor's node, children visited left then
right. The first node with a free slot receives the affiliate. When both of
its slots are free, the lighter leg (lower cached volume) wins and ties go
left; a preferred leg only counts for the sponsor's own slots.
"""

import logging
import uuid
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.audit_log import AuditLog
from app.models.network_node import NetworkNode
from app.services import directory, tree_store

logger = logging.getLogger(__name__)

NodeLoader = Callable[[list[uuid.UUID]], Awaitable[dict[uuid.UUID, NetworkNode]]]


def choose_leg(node: NetworkNode, preferred_leg: str | None = None) -> str | None:
    """Pick the free leg of `node` that receives a new child, or None if full."""
    free = node.free_legs
    if not free:
        return None
    if len(free) == 1:
        return free[0]
    if preferred_leg in free:
        return preferred_leg
    if node.right_leg_volume < node.left_leg_volume:
        return "right"
    return "left"


async def find_open_slot(
    sponsor_node: NetworkNode,
    load_nodes: NodeLoader,
    preferred_leg: str | None = None,
) -> tuple[NetworkNode, str]:
    """Breadth-first search for the first free slot under sponsor_node.

    Loads one level of the tree per query. Returns (parent, leg).
    """
    level = [sponsor_node]
    while level:
        next_ids: list[uuid.UUID] = []
        for node in level:
            hint = preferred_leg if node is sponsor_node else None
            leg = choose_leg(node, hint)
            if leg is not None:
                return node, leg
            next_ids.extend([node.left_child_id, node.right_child_id])

        loaded = await load_nodes(next_ids)
        level = [loaded[node_id] for node_id in next_ids if node_id in loaded]

    # Only reachable if child links point at missing rows
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail="No free slot found in the sponsor's subtree",
    )


async def place_affiliate(
    db: AsyncSession,
    affiliate_id: uuid.UUID,
    sponsor_id: uuid.UUID | None,
    preferred_leg: str | None,
    actor_id: uuid.UUID,
) -> tuple[NetworkNode, bool]:
    """Create the affiliate's node under the sponsor's subtree.

    In a single transaction:
    1. Validate the affiliate and resolve its sponsor from the directory.
    2. Lock the sponsor's node (serializes joins under the same sponsor).
    3. BFS for a free slot, then lock and re-check the chosen parent.
    4. Insert the node and set the parent's child pointer.
    5. Audit log.

    Returns (node, is_spillover).
    """

    # 1. Affiliate and sponsor
    affiliate = await directory.get_affiliate(db, affiliate_id)
    if affiliate is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Affiliate not found",
        )

    sponsor_id = sponsor_id or await directory.get_sponsor(db, affiliate_id)
    if sponsor_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Sponsor is required",
        )

    if await tree_store.get_node_by_affiliate(db, affiliate_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Affiliate is already placed in the network",
        )

    if not await directory.is_active(db, sponsor_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sponsor is not active",
        )

    # 2. Sponsor node, locked for the whole search-and-claim
    sponsor_node = await tree_store.get_node_by_affiliate(db, sponsor_id, for_update=True)
    if sponsor_node is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Sponsor not placed",
        )

    async def _load(node_ids: list[uuid.UUID]) -> dict[uuid.UUID, NetworkNode]:
        return await tree_store.load_nodes(db, [nid for nid in node_ids if nid is not None])

    # 3. Search, then claim under the parent's row lock
    for attempt in range(1, settings.PLACEMENT_MAX_ATTEMPTS + 1):
        parent, leg = await find_open_slot(sponsor_node, _load, preferred_leg)
        if parent.id != sponsor_node.id:
            parent = await tree_store.require_node(db, parent.id, for_update=True)
        if parent.child_id(leg) is None:
            break
        # A placement under an overlapping sponsor claimed the slot first
        logger.warning(
            "Slot %s of node %s taken during placement of %s (attempt %d)",
            leg, parent.id, affiliate_id, attempt,
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Could not claim a free slot, please retry",
        )

    # 4. Node + child pointer
    node = NetworkNode(
        affiliate_id=affiliate_id,
        sponsor_id=sponsor_id,
        parent_id=parent.id,
        leg=leg,
        depth=parent.depth + 1,
    )
    db.add(node)
    try:
        await db.flush()
        if leg == "left":
            parent.left_child_id = node.id
        else:
            parent.right_child_id = node.id
        await db.flush()
    except IntegrityError:
        logger.warning("Slot %s of node %s already taken at claim time", leg, parent.id)
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Position '{leg}' under this parent is already taken",
        )

    is_spillover = parent.id != sponsor_node.id

    # 5. Audit log
    db.add(
        AuditLog(
            user_id=actor_id,
            action="network.place",
            resource_type="network_node",
            resource_id=node.id,
            new_values={
                "affiliate_id": str(affiliate_id),
                "sponsor_id": str(sponsor_id),
                "parent_id": str(parent.id),
                "leg": leg,
                "spillover": is_spillover,
            },
        )
    )
    await db.flush()

    logger.info(
        "Placed affiliate %s under node %s (%s leg, spillover=%s)",
        affiliate_id, parent.id, leg, is_spillover,
    )
    return node, is_spillover
