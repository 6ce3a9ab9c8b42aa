import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel

LEGS = ("left", "right")


class NetworkNode(BaseModel):
    """One position in the binary tree, one per network-activated affiliate.

    Links are plain id references into the same table. `parent_id` and `leg`
    are written once at placement; only the audited override in
    app.services.overrides may change them afterwards.
    """

    __tablename__ = "network_nodes"
    __table_args__ = (
        UniqueConstraint("parent_id", "leg", name="uq_network_nodes_parent_leg"),
        CheckConstraint("leg IN ('left', 'right')", name="chk_network_node_leg"),
        CheckConstraint("parent_id IS DISTINCT FROM id", name="chk_no_self_parent"),
        CheckConstraint(
            "(parent_id IS NULL) = (leg IS NULL)", name="chk_parent_leg_together"
        ),
    )

    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("affiliates.id"), nullable=False, unique=True
    )
    sponsor_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("affiliates.id"), nullable=True, index=True
    )

    # Tree links
    parent_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=True, index=True
    )
    leg: Mapped[str | None] = mapped_column(String(5), nullable=True)
    left_child_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=True
    )
    right_child_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=True
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Cumulative volume cache, written only by the volume aggregator
    personal_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    left_leg_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    right_leg_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)

    # Portion of the cumulative leg volume already settled by commission cycles
    left_flushed_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    right_flushed_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    flushed_through: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def child_id(self, leg: str) -> uuid.UUID | None:
        return self.left_child_id if leg == "left" else self.right_child_id

    def leg_volume(self, leg: str) -> Decimal:
        return self.left_leg_volume if leg == "left" else self.right_leg_volume

    @property
    def free_legs(self) -> list[str]:
        return [leg for leg in LEGS if self.child_id(leg) is None]

    @property
    def subtree_volume(self) -> Decimal:
        """Everything this node contributes to the legs of its ancestors."""
        return self.personal_volume + self.left_leg_volume + self.right_leg_volume
