from __future__ import annotations
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from market_engine.models.price_history import PriceHistoryEntry


async def record_change(
    db: AsyncSession,
    *,
    listing_id: str,
    old_price: Decimal,
    new_price: Decimal,
    changed_at: datetime,
) -> PriceHistoryEntry:
    # Only called from change_price, inside its transaction: the entry and the
    # new asking price commit (or roll back) together.
    entry = PriceHistoryEntry(
        listing_id=listing_id,
        old_price=old_price,
        new_price=new_price,
        changed_at=changed_at,
    )
    db.add(entry)
    return entry


async def price_history_for(db: AsyncSession, listing_id: str) -> list[PriceHistoryEntry]:
    stmt = (
        select(PriceHistoryEntry)
        .where(PriceHistoryEntry.listing_id == listing_id)
        .order_by(PriceHistoryEntry.changed_at.asc(), PriceHistoryEntry.id.asc())
    )
    return list((await db.execute(stmt)).scalars().all())
