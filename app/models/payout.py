import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel


class PayoutInstruction(BaseModel):
    """Outbox row consumed by the payout ledger. The engine never moves money."""

    __tablename__ = "payout_instructions"
    __table_args__ = (
        # One cycle payout per node; adjustments are keyed by their own id
        Index(
            "uq_payout_node_cycle",
            "node_id",
            "cycle_id",
            unique=True,
            postgresql_where=text("adjustment_id IS NULL"),
        ),
        CheckConstraint("status IN ('pending', 'sent', 'failed')", name="chk_payout_status"),
    )

    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    cycle_id: Mapped[str] = mapped_column(String(20), nullable=False)
    adjustment_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("commission_adjustments.id"), nullable=True, unique=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="pending", index=True)
