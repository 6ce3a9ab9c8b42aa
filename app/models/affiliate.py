import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import BaseModel


class Affiliate(BaseModel):
    """Directory record of an affiliate.

    Owned by the account/CRUD layer. The engine only reads status, sponsor
    and contact data from it; tree structure lives in NetworkNode.
    """

    __tablename__ = "affiliates"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'active', 'inactive', 'suspended', 'cancelled')", name="chk_affiliate_status"),
        CheckConstraint("sponsor_id IS DISTINCT FROM id", name="chk_no_self_sponsor"),
    )

    affiliate_code: Mapped[str] = mapped_column(
        String(20), nullable=False, unique=True, index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Who referred this affiliate (not necessarily the tree parent)
    sponsor_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("affiliates.id"), nullable=True, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)

    # Soft delete
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.status == "active" and self.deleted_at is None
