"""Read-only access to the affiliate directory (status, sponsor, contact)."""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.affiliate import Affiliate


async def get_affiliate(db: AsyncSession, affiliate_id: uuid.UUID) -> Affiliate | None:
    result = await db.execute(
        select(Affiliate).where(
            Affiliate.id == affiliate_id,
            Affiliate.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def is_active(db: AsyncSession, affiliate_id: uuid.UUID) -> bool:
    affiliate = await get_affiliate(db, affiliate_id)
    return affiliate is not None and affiliate.is_active


async def get_sponsor(db: AsyncSession, affiliate_id: uuid.UUID) -> uuid.UUID | None:
    affiliate = await get_affiliate(db, affiliate_id)
    return affiliate.sponsor_id if affiliate is not None else None


async def active_affiliate_ids(
    db: AsyncSession, affiliate_ids: set[uuid.UUID]
) -> set[uuid.UUID]:
    """Filter a batch of affiliate ids down to the active ones (one query)."""
    if not affiliate_ids:
        return set()
    result = await db.execute(
        select(Affiliate.id).where(
            Affiliate.id.in_(affiliate_ids),
            Affiliate.status == "active",
            Affiliate.deleted_at.is_(None),
        )
    )
    return set(result.scalars().all())


async def get_contacts(
    db: AsyncSession, affiliate_ids: set[uuid.UUID]
) -> dict[uuid.UUID, tuple[str, str]]:
    """Batch-resolve (email, full name) for notification purposes."""
    if not affiliate_ids:
        return {}
    result = await db.execute(
        select(Affiliate.id, Affiliate.email, Affiliate.first_name, Affiliate.last_name).where(
            Affiliate.id.in_(affiliate_ids)
        )
    )
    return {row.id: (row.email, f"{row.first_name} {row.last_name}") for row in result}
