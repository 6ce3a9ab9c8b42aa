import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import AwareDatetime, BaseModel, Field


class CycleRunRequest(BaseModel):
    """Parameters of a binary cycle. Omitted values come from settings."""

    percentage: Decimal | None = Field(default=None, gt=0, le=100)
    cap_per_cycle: Decimal | None = Field(default=None, ge=0)
    cutoff_at: AwareDatetime | None = None


class CommissionRecordResponse(BaseModel):
    id: uuid.UUID
    node_id: uuid.UUID
    affiliate_id: uuid.UUID
    cycle_id: str
    left_volume: Decimal
    right_volume: Decimal
    matched_volume: Decimal
    percentage: Decimal
    commission_amount: Decimal
    capped_amount: Decimal
    carryover_left: Decimal
    carryover_right: Decimal
    forfeited_volume: Decimal
    computed_at: datetime

    model_config = {"from_attributes": True}


class CycleResponse(BaseModel):
    cycle_id: str
    cutoff_at: datetime
    percentage: Decimal
    cap_per_cycle: Decimal
    max_carryover_cycles: int
    status: str
    started_at: datetime
    completed_at: datetime | None
    nodes_total: int
    nodes_processed: int
    nodes_failed: int

    model_config = {"from_attributes": True}


class CycleRunResponse(BaseModel):
    cycle: CycleResponse
    records: list[CommissionRecordResponse]
    failed_node_ids: list[uuid.UUID]
    skipped_node_ids: list[uuid.UUID]


class CycleDetailResponse(BaseModel):
    cycle: CycleResponse
    records: list[CommissionRecordResponse]


class AdjustmentRequest(BaseModel):
    node_id: uuid.UUID
    cycle_id: str = Field(min_length=1, max_length=20)
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    reason: str = Field(min_length=5, max_length=500)


class AdjustmentResponse(BaseModel):
    id: uuid.UUID
    node_id: uuid.UUID
    cycle_id: str
    amount: Decimal
    reason: str
    created_by: uuid.UUID
    created_at: datetime

    model_config = {"from_attributes": True}
