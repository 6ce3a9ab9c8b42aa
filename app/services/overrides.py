"""
Administrative overrides of sponsor and placement.

These are the only code paths allowed to change a node's sponsor, parent or
leg once placed. Each call requires a reason and writes an audit entry with
the before/after values and the acting user.
"""

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog
from app.models.network_node import NetworkNode
from app.services import directory, tree_store, volume

logger = logging.getLogger(__name__)


async def reassign_sponsor(
    db: AsyncSession,
    node_id: uuid.UUID,
    new_sponsor_id: uuid.UUID,
    reason: str,
    actor_id: uuid.UUID,
) -> NetworkNode:
    """Change who is recorded as the node's sponsor. Tree position is untouched."""
    node = await tree_store.require_node(db, node_id, for_update=True)

    if new_sponsor_id == node.affiliate_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="An affiliate cannot sponsor itself",
        )
    if new_sponsor_id == node.sponsor_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="New sponsor is the current sponsor",
        )
    if await directory.get_affiliate(db, new_sponsor_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sponsor not found",
        )

    old_sponsor_id = node.sponsor_id
    node.sponsor_id = new_sponsor_id

    db.add(
        AuditLog(
            user_id=actor_id,
            action="network.sponsor_override",
            resource_type="network_node",
            resource_id=node.id,
            old_values={"sponsor_id": str(old_sponsor_id) if old_sponsor_id else None},
            new_values={"sponsor_id": str(new_sponsor_id)},
            reason=reason,
        )
    )
    await db.flush()

    logger.warning(
        "Sponsor of node %s changed from %s to %s by %s: %s",
        node.id, old_sponsor_id, new_sponsor_id, actor_id, reason,
    )
    return node


async def relocate_node(
    db: AsyncSession,
    node_id: uuid.UUID,
    new_parent_id: uuid.UUID,
    new_leg: str,
    reason: str,
    actor_id: uuid.UUID,
) -> NetworkNode:
    """Move a node, with its whole subtree, to a free slot elsewhere in the tree.

    In a single transaction:
    1. Validate the target slot (free, outside the moved subtree).
    2. Take the subtree volume out of the old ancestor chain and detach.
    3. Attach under the new parent and shift subtree depths.
    4. Add the subtree volume to the new ancestor chain.
    5. Audit log.

    Unsettled volume leaves each old ancestor leg first. Settled volume that
    an ancestor of both chains already counted stays settled on its new leg.
    """
    node = await tree_store.require_node(db, node_id, for_update=True)
    if node.parent_id is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A root node cannot be relocated",
        )
    if node.parent_id == new_parent_id and node.leg == new_leg:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Node already occupies this position",
        )

    new_parent = await tree_store.get_node(db, new_parent_id, for_update=True)
    if new_parent is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="New parent not found",
        )

    # 1. Target slot
    arena = await tree_store.load_arena(db)
    subtree = list(tree_store.iter_subtree(arena, node.id))
    if new_parent.id in {n.id for n in subtree}:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot move a node under its own subtree",
        )
    if new_parent.child_id(new_leg) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Position '{new_leg}' under this parent is already taken",
        )

    old_parent = await tree_store.require_node(db, node.parent_id, for_update=True)
    old_values = {"parent_id": str(old_parent.id), "leg": node.leg, "depth": node.depth}
    moved_volume = node.subtree_volume

    # 2. Detach
    released = await volume.detach_from_upline(db, node, moved_volume)
    if node.leg == "left":
        old_parent.left_child_id = None
    else:
        old_parent.right_child_id = None
    node.parent_id = None
    node.leg = None
    await db.flush()

    # 3. Attach
    depth_shift = new_parent.depth + 1 - node.depth
    node.parent_id = new_parent.id
    node.leg = new_leg
    if new_leg == "left":
        new_parent.left_child_id = node.id
    else:
        new_parent.right_child_id = node.id
    for member in subtree:
        member.depth += depth_shift
    await db.flush()

    # 4. Volume under the new upline
    await volume.attach_to_upline(db, node, moved_volume, released)

    # 5. Audit log
    db.add(
        AuditLog(
            user_id=actor_id,
            action="network.relocate",
            resource_type="network_node",
            resource_id=node.id,
            old_values=old_values,
            new_values={
                "parent_id": str(new_parent.id),
                "leg": new_leg,
                "depth": node.depth,
                "moved_volume": str(moved_volume),
                "subtree_size": len(subtree),
            },
            reason=reason,
        )
    )
    await db.flush()

    logger.warning(
        "Node %s relocated from %s/%s to %s/%s by %s: %s",
        node.id, old_values["parent_id"], old_values["leg"],
        new_parent.id, new_leg, actor_id, reason,
    )
    return node
