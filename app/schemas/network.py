import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator

Leg = Literal["left", "right"]


class RootNodeRequest(BaseModel):
    """Network-activate the first affiliate of a tree (no parent)."""

    affiliate_id: uuid.UUID


class PlacementRequest(BaseModel):
    """Place an affiliate in the sponsor's subtree by spillover."""

    affiliate_id: uuid.UUID
    sponsor_id: uuid.UUID | None = Field(
        default=None,
        description="Sponsor affiliate id; read from the directory when omitted",
    )
    preferred_leg: Leg | None = Field(
        default=None,
        description="Hint for the sponsor's own free slot only",
    )

    @model_validator(mode="after")
    def validate_not_self(self):
        if self.sponsor_id is not None and self.sponsor_id == self.affiliate_id:
            raise ValueError("An affiliate cannot sponsor itself")
        return self


class NodeResponse(BaseModel):
    id: uuid.UUID
    affiliate_id: uuid.UUID
    sponsor_id: uuid.UUID | None
    parent_id: uuid.UUID | None
    leg: str | None
    left_child_id: uuid.UUID | None
    right_child_id: uuid.UUID | None
    depth: int
    personal_volume: Decimal
    left_leg_volume: Decimal
    right_leg_volume: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class PlacementResponse(BaseModel):
    node: NodeResponse
    is_spillover: bool


class TreeNodeResponse(BaseModel):
    """Recursive view of the binary tree for the genealogy UI."""

    id: uuid.UUID
    affiliate_id: uuid.UUID
    leg: str | None
    depth: int
    personal_volume: Decimal
    left_leg_volume: Decimal
    right_leg_volume: Decimal
    left_child: "TreeNodeResponse | None" = None
    right_child: "TreeNodeResponse | None" = None


class LegStats(BaseModel):
    volume: Decimal
    open_volume: Decimal
    carryover: Decimal
    carryover_cycles_remaining: int
    members: int


class NetworkStatsResponse(BaseModel):
    node_id: uuid.UUID
    personal_volume: Decimal
    group_volume: Decimal
    weaker_leg: Leg
    balance_percentage: int
    left: LegStats
    right: LegStats
    depth: int


class SponsorOverrideRequest(BaseModel):
    new_sponsor_id: uuid.UUID
    reason: str = Field(min_length=5, max_length=500)


class RelocateRequest(BaseModel):
    new_parent_id: uuid.UUID
    new_leg: Leg
    reason: str = Field(min_length=5, max_length=500)
