import uuid
from decimal import Decimal

from pydantic import AwareDatetime, BaseModel, Field


class VolumeEventRequest(BaseModel):
    """Qualifying sales event from the order ledger."""

    event_id: str = Field(min_length=1, max_length=100)
    affiliate_id: uuid.UUID
    volume_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    occurred_at: AwareDatetime


class VolumeBatchRequest(BaseModel):
    events: list[VolumeEventRequest] = Field(min_length=1, max_length=1000)


class VolumePostResponse(BaseModel):
    event_id: str
    node_id: uuid.UUID | None
    duplicate: bool
    ancestors_updated: int


class RejectedEvent(BaseModel):
    event_id: str
    detail: str


class VolumeBatchResponse(BaseModel):
    applied: list[VolumePostResponse]
    duplicates: list[str]
    rejected: list[RejectedEvent]


class VolumeDrift(BaseModel):
    node_id: uuid.UUID
    field: str
    cached: Decimal
    expected: Decimal


class RebuildResponse(BaseModel):
    nodes_checked: int
    events_replayed: int
    drift: list[VolumeDrift]
    repaired: bool
