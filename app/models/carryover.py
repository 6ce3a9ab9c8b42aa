import uuid
from decimal import Decimal

from sqlalchemy import CheckConstraint, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel


class CarryoverEntry(BaseModel):
    """Unmatched volume kept on one leg of a node for a limited number of cycles."""

    __tablename__ = "carryover_entries"
    __table_args__ = (
        UniqueConstraint("node_id", "leg", name="uq_carryover_node_leg"),
        CheckConstraint("leg IN ('left', 'right')", name="chk_carryover_leg"),
        CheckConstraint("amount > 0", name="chk_carryover_amount"),
        CheckConstraint("cycles_remaining > 0", name="chk_carryover_cycles"),
    )

    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False, index=True
    )
    leg: Mapped[str] = mapped_column(String(5), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    cycles_remaining: Mapped[int] = mapped_column(Integer, nullable=False)
    last_cycle_id: Mapped[str] = mapped_column(String(20), nullable=False)
