"""
Tree store: lookups over the binary tree, root activation and read views.

Nodes reference each other by id only. Anything that needs to walk large
parts of the tree loads an id-keyed arena first and walks it in memory.
"""

import logging
import uuid
from collections import deque
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog
from app.models.network_node import LEGS, NetworkNode
from app.schemas.network import LegStats, NetworkStatsResponse, TreeNodeResponse
from app.services import carryover, directory

logger = logging.getLogger(__name__)


async def get_node(
    db: AsyncSession, node_id: uuid.UUID, for_update: bool = False
) -> NetworkNode | None:
    query = select(NetworkNode).where(NetworkNode.id == node_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_node_by_affiliate(
    db: AsyncSession, affiliate_id: uuid.UUID, for_update: bool = False
) -> NetworkNode | None:
    query = select(NetworkNode).where(NetworkNode.affiliate_id == affiliate_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def require_node(
    db: AsyncSession, node_id: uuid.UUID, for_update: bool = False
) -> NetworkNode:
    node = await get_node(db, node_id, for_update=for_update)
    if node is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Network node not found",
        )
    return node


async def load_nodes(
    db: AsyncSession, node_ids: list[uuid.UUID]
) -> dict[uuid.UUID, NetworkNode]:
    """Fetch a batch of nodes in one query, keyed by id."""
    if not node_ids:
        return {}
    result = await db.execute(
        select(NetworkNode)
        .where(NetworkNode.id.in_(node_ids))
        .execution_options(populate_existing=True)
    )
    return {node.id: node for node in result.scalars().all()}


async def load_arena(db: AsyncSession) -> dict[uuid.UUID, NetworkNode]:
    """Every node of the network keyed by id."""
    result = await db.execute(select(NetworkNode))
    return {node.id: node for node in result.scalars().all()}


async def create_root_node(
    db: AsyncSession, affiliate_id: uuid.UUID, actor_id: uuid.UUID
) -> NetworkNode:
    """Network-activate an affiliate as the root of a tree."""
    affiliate = await directory.get_affiliate(db, affiliate_id)
    if affiliate is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Affiliate not found",
        )

    if await get_node_by_affiliate(db, affiliate_id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Affiliate is already placed in the network",
        )

    node = NetworkNode(
        affiliate_id=affiliate_id,
        sponsor_id=affiliate.sponsor_id,
        depth=0,
    )
    db.add(node)
    await db.flush()

    db.add(
        AuditLog(
            user_id=actor_id,
            action="network.create_root",
            resource_type="network_node",
            resource_id=node.id,
            new_values={"affiliate_id": str(affiliate_id)},
        )
    )
    await db.flush()

    logger.info("Root node %s created for affiliate %s", node.id, affiliate_id)
    return node


def iter_subtree(
    arena: dict[uuid.UUID, NetworkNode], root_id: uuid.UUID | None
):
    """Yield every node of the subtree rooted at root_id, breadth-first."""
    if root_id is None or root_id not in arena:
        return
    queue = deque([root_id])
    while queue:
        node = arena.get(queue.popleft())
        if node is None:
            continue
        yield node
        for leg in LEGS:
            child_id = node.child_id(leg)
            if child_id is not None:
                queue.append(child_id)


def count_leg_members(arena: dict[uuid.UUID, NetworkNode], node: NetworkNode, leg: str) -> int:
    return sum(1 for _ in iter_subtree(arena, node.child_id(leg)))


async def get_binary_tree(
    db: AsyncSession,
    root_id: uuid.UUID,
    depth: int = 3,
) -> TreeNodeResponse | None:
    """Build the binary tree starting from root_id, up to `depth` levels.

    Returns a TreeNodeResponse with nested left_child/right_child,
    or None if the root node is not found.
    """
    root = await get_node(db, root_id)
    if root is None:
        return None

    return await _build_node(db, root, depth)


async def _build_node(
    db: AsyncSession,
    node: NetworkNode,
    remaining_depth: int,
) -> TreeNodeResponse:
    """Recursively build a tree node with its children."""
    left_child = None
    right_child = None

    if remaining_depth > 0:
        children = await load_nodes(
            db, [cid for cid in (node.left_child_id, node.right_child_id) if cid]
        )
        if node.left_child_id in children:
            left_child = await _build_node(db, children[node.left_child_id], remaining_depth - 1)
        if node.right_child_id in children:
            right_child = await _build_node(db, children[node.right_child_id], remaining_depth - 1)

    return TreeNodeResponse(
        id=node.id,
        affiliate_id=node.affiliate_id,
        leg=node.leg,
        depth=node.depth,
        personal_volume=node.personal_volume,
        left_leg_volume=node.left_leg_volume,
        right_leg_volume=node.right_leg_volume,
        left_child=left_child,
        right_child=right_child,
    )


async def get_network_stats(db: AsyncSession, node_id: uuid.UUID) -> NetworkStatsResponse:
    """Leg volumes, balance and carryover of one node."""
    node = await require_node(db, node_id)
    arena = await load_arena(db)
    entries = {entry.leg: entry for entry in await carryover.get_entries(db, node_id)}

    legs = {}
    for leg in LEGS:
        entry = entries.get(leg)
        flushed = node.left_flushed_volume if leg == "left" else node.right_flushed_volume
        legs[leg] = LegStats(
            volume=node.leg_volume(leg),
            open_volume=max(node.leg_volume(leg) - flushed, Decimal("0")),
            carryover=entry.amount if entry else Decimal("0"),
            carryover_cycles_remaining=entry.cycles_remaining if entry else 0,
            members=count_leg_members(arena, node, leg),
        )

    weaker = min(node.left_leg_volume, node.right_leg_volume)
    stronger = max(node.left_leg_volume, node.right_leg_volume)

    return NetworkStatsResponse(
        node_id=node.id,
        personal_volume=node.personal_volume,
        group_volume=node.left_leg_volume + node.right_leg_volume,
        weaker_leg="left" if node.left_leg_volume <= node.right_leg_volume else "right",
        balance_percentage=round(weaker / stronger * 100) if stronger > 0 else 100,
        left=legs["left"],
        right=legs["right"],
        depth=node.depth,
    )
