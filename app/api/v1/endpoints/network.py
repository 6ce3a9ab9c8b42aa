import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import require_permission
from app.db.session import get_db
from app.models.user import User
from app.schemas.network import (
    NetworkStatsResponse,
    NodeResponse,
    PlacementRequest,
    PlacementResponse,
    RelocateRequest,
    RootNodeRequest,
    SponsorOverrideRequest,
    TreeNodeResponse,
)
from app.services import overrides, tree_store
from app.services.placement import place_affiliate

router = APIRouter(prefix="/network", tags=["network"])


@router.post("/roots", response_model=NodeResponse, status_code=201)
async def create_root(
    body: RootNodeRequest,
    current_user: User = Depends(require_permission("network:place")),
    db: AsyncSession = Depends(get_db),
):
    """Network-activate the first affiliate of a tree."""
    node = await tree_store.create_root_node(db, body.affiliate_id, current_user.id)
    return NodeResponse.model_validate(node)


@router.post("/place", response_model=PlacementResponse, status_code=201)
async def place(
    body: PlacementRequest,
    current_user: User = Depends(require_permission("network:place")),
    db: AsyncSession = Depends(get_db),
):
    """Place an affiliate in the sponsor's subtree (breadth-first spillover)."""
    node, is_spillover = await place_affiliate(
        db,
        affiliate_id=body.affiliate_id,
        sponsor_id=body.sponsor_id,
        preferred_leg=body.preferred_leg,
        actor_id=current_user.id,
    )
    return PlacementResponse(node=NodeResponse.model_validate(node), is_spillover=is_spillover)


@router.get("/nodes/{node_id}", response_model=NodeResponse)
async def get_node(
    node_id: uuid.UUID,
    current_user: User = Depends(require_permission("network:read")),
    db: AsyncSession = Depends(get_db),
):
    """Single node with its cumulative leg volumes (read by the rank engine)."""
    node = await tree_store.require_node(db, node_id)
    return NodeResponse.model_validate(node)


@router.get("/nodes/{node_id}/tree", response_model=TreeNodeResponse)
async def get_tree(
    node_id: uuid.UUID,
    current_user: User = Depends(require_permission("network:read")),
    db: AsyncSession = Depends(get_db),
    depth: int = Query(default=3, ge=1, le=10, description="Tree depth levels"),
):
    """Get the binary tree starting from a node, up to `depth` levels."""
    tree = await tree_store.get_binary_tree(db, node_id, depth)
    if tree is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Network node not found",
        )
    return tree


@router.get("/nodes/{node_id}/stats", response_model=NetworkStatsResponse)
async def get_stats(
    node_id: uuid.UUID,
    current_user: User = Depends(require_permission("network:read")),
    db: AsyncSession = Depends(get_db),
):
    """Leg volumes, balance and carryover of a node."""
    return await tree_store.get_network_stats(db, node_id)


@router.post("/nodes/{node_id}/sponsor", response_model=NodeResponse)
async def override_sponsor(
    node_id: uuid.UUID,
    body: SponsorOverrideRequest,
    current_user: User = Depends(require_permission("network:override")),
    db: AsyncSession = Depends(get_db),
):
    """Privileged: record a different sponsor for a node (audited)."""
    node = await overrides.reassign_sponsor(
        db, node_id, body.new_sponsor_id, body.reason, current_user.id
    )
    return NodeResponse.model_validate(node)


@router.post("/nodes/{node_id}/relocate", response_model=NodeResponse)
async def relocate(
    node_id: uuid.UUID,
    body: RelocateRequest,
    current_user: User = Depends(require_permission("network:override")),
    db: AsyncSession = Depends(get_db),
):
    """Privileged: move a node and its subtree to another free slot (audited)."""
    node = await overrides.relocate_node(
        db, node_id, body.new_parent_id, body.new_leg, body.reason, current_user.id
    )
    return NodeResponse.model_validate(node)
