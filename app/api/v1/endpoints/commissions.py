from typing import Annotated

from fastapi import APIRouter, Depends, Path
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.deps import get_session_factory, require_permission
from app.db.session import get_db
from app.models.user import User
from app.schemas.commission import (
    AdjustmentRequest,
    AdjustmentResponse,
    CommissionRecordResponse,
    CycleDetailResponse,
    CycleResponse,
    CycleRunRequest,
    CycleRunResponse,
)
from app.services import commission

router = APIRouter(prefix="/commissions", tags=["commissions"])

CycleId = Annotated[str, Path(min_length=1, max_length=20, pattern=r"^[A-Za-z0-9_-]+$")]


@router.post("/cycles/{cycle_id}/run", response_model=CycleRunResponse)
async def run_cycle(
    body: CycleRunRequest,
    cycle_id: CycleId,
    current_user: User = Depends(require_permission("commissions:run")),
    session_factory=Depends(get_session_factory),
):
    """Run a binary cycle, or resume it with the same cycle_id after an interruption."""
    report = await commission.run_cycle(
        session_factory,
        cycle_id=cycle_id,
        percentage=body.percentage or settings.BINARY_PERCENTAGE,
        cap_per_cycle=(
            body.cap_per_cycle if body.cap_per_cycle is not None else settings.BINARY_CAP_PER_CYCLE
        ),
        cutoff_at=body.cutoff_at,
    )
    return CycleRunResponse(
        cycle=CycleResponse.model_validate(report.cycle),
        records=[CommissionRecordResponse.model_validate(r) for r in report.records],
        failed_node_ids=report.failed_node_ids,
        skipped_node_ids=report.skipped_node_ids,
    )


@router.get("/cycles/{cycle_id}", response_model=CycleDetailResponse)
async def get_cycle(
    cycle_id: CycleId,
    current_user: User = Depends(require_permission("commissions:read")),
    db: AsyncSession = Depends(get_db),
):
    """A cycle with all commission records written for it."""
    cycle = await commission.get_cycle(db, cycle_id)
    records = await commission.list_cycle_records(db, cycle_id)
    return CycleDetailResponse(
        cycle=CycleResponse.model_validate(cycle),
        records=[CommissionRecordResponse.model_validate(r) for r in records],
    )


@router.post("/adjustments", response_model=AdjustmentResponse, status_code=201)
async def create_adjustment(
    body: AdjustmentRequest,
    current_user: User = Depends(require_permission("commissions:run")),
    db: AsyncSession = Depends(get_db),
):
    """Compensating correction for a cycle already written."""
    adjustment = await commission.record_adjustment(
        db,
        node_id=body.node_id,
        cycle_id=body.cycle_id,
        amount=body.amount,
        reason=body.reason,
        actor_id=current_user.id,
    )
    return AdjustmentResponse.model_validate(adjustment)
