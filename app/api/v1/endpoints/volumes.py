from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.deps import require_permission
from app.db.session import get_db
from app.models.user import User
from app.schemas.volume import (
    RebuildResponse,
    VolumeBatchRequest,
    VolumeBatchResponse,
    VolumeEventRequest,
    VolumePostResponse,
)
from app.services import volume

router = APIRouter(prefix="/volumes", tags=["volumes"])


@router.post("/events", response_model=VolumePostResponse)
async def post_event(
    body: VolumeEventRequest,
    current_user: User = Depends(require_permission("volumes:post")),
    db: AsyncSession = Depends(get_db),
):
    """Apply one qualifying sales event. Re-delivery of the same event_id is a no-op."""
    return await volume.post_volume(
        db,
        event_id=body.event_id,
        affiliate_id=body.affiliate_id,
        amount=body.volume_amount,
        occurred_at=body.occurred_at,
    )


@router.post("/events/batch", response_model=VolumeBatchResponse)
async def post_events(
    body: VolumeBatchRequest,
    current_user: User = Depends(require_permission("volumes:post")),
    db: AsyncSession = Depends(get_db),
):
    """Apply a batch of ledger events; unknown affiliates are rejected individually."""
    return await volume.post_volume_batch(db, body.events)


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild(
    current_user: User = Depends(require_permission("volumes:rebuild")),
    db: AsyncSession = Depends(get_db),
):
    """Recompute every cached leg volume from the stored events and repair drift."""
    return await volume.rebuild_leg_volumes(db, repair=True)


@router.get("/verify", response_model=RebuildResponse)
async def verify(
    current_user: User = Depends(require_permission("volumes:rebuild")),
    db: AsyncSession = Depends(get_db),
):
    """Report cached leg volume drift without changing anything."""
    return await volume.verify_leg_volumes(db)
