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
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel, utcnow


class CommissionCycle(BaseModel):
    """One scheduled binary cycle. Parameters are frozen by the first run."""

    __tablename__ = "commission_cycles"
    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'completed_with_errors')",
            name="chk_commission_cycle_status",
        ),
    )

    cycle_id: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    cutoff_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    cap_per_cycle: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    max_carryover_cycles: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(25), nullable=False, default="running")
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    nodes_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nodes_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    nodes_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CycleSnapshot(BaseModel):
    """Input volumes of one node frozen at cycle start; retries read only this."""

    __tablename__ = "cycle_snapshots"
    __table_args__ = (
        UniqueConstraint("cycle_id", "node_id", name="uq_cycle_snapshot_node"),
    )

    cycle_id: Mapped[str] = mapped_column(
        String(20), ForeignKey("commission_cycles.cycle_id"), nullable=False, index=True
    )
    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Cumulative leg totals at cutoff, become the node's flushed counters
    left_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    right_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    left_fresh: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    right_fresh: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    left_carry: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    right_carry: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    left_carry_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    right_carry_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class CommissionRecord(BaseModel):
    """Binary commission of one node for one cycle. Never updated once written."""

    __tablename__ = "commission_records"
    __table_args__ = (
        UniqueConstraint("node_id", "cycle_id", name="uq_commission_node_cycle"),
    )

    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False, index=True
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    cycle_id: Mapped[str] = mapped_column(
        String(20), ForeignKey("commission_cycles.cycle_id"), nullable=False, index=True
    )

    # Effective volumes (fresh + carryover) that entered the match
    left_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    right_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    matched_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    capped_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    carryover_left: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    carryover_right: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)
    forfeited_volume: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=0)

    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class CommissionAdjustment(BaseModel):
    """Compensating correction for a cycle already paid. Signed amount."""

    __tablename__ = "commission_adjustments"

    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False, index=True
    )
    cycle_id: Mapped[str] = mapped_column(
        String(20), ForeignKey("commission_cycles.cycle_id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
