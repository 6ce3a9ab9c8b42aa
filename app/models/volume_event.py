import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel


class VolumeEvent(BaseModel):
    """Qualifying sales event already applied to the tree.

    Doubles as the dedup log (unique event_id) and as the source the leg
    volume cache is rebuilt from.
    """

    __tablename__ = "volume_events"
    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_volume_event_amount"),
    )

    event_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    node_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("network_nodes.id"), nullable=False, index=True
    )
    affiliate_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("affiliates.id"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
