from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_engine.core.config import settings
from market_engine.models.listing import Listing, ListingStatus
from market_engine.models.notification import Notification
from market_engine.models.price_history import PriceHistoryEntry
from market_engine.models.watchlist import WatchlistEntry
from market_engine.services.batches import BatchJob, JobRunResult, run_in_batches
from market_engine.services.listing_state import emit_lifecycle_event


log = logging.getLogger(__name__)

STALE_DRAFT_STATUSES = (ListingStatus.DRAFT.value, ListingStatus.PENDING.value)


class ExpireListingsJob(BatchJob):
    name = "expire_listings"

    def __init__(self, now: datetime):
        self.now = now

    async def run_batch(self, db: AsyncSession, limit: int) -> int:
        stmt = (
            select(Listing)
            .where(
                Listing.status == ListingStatus.ACTIVE.value,
                Listing.expires_at.is_not(None),
                Listing.expires_at < self.now,
            )
            .order_by(Listing.expires_at.asc(), Listing.id.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
        )
        rows = (await db.execute(stmt)).scalars().all()
        for listing in rows:
            listing.status = ListingStatus.EXPIRED.value
            emit_lifecycle_event(db, listing, ListingStatus.EXPIRED, self.now)
        await db.flush()
        return len(rows)


class CleanupStaleDraftsJob(BatchJob):
    name = "cleanup_stale_drafts"

    def __init__(self, cutoff: datetime):
        self.cutoff = cutoff

    async def run_batch(self, db: AsyncSession, limit: int) -> int:
        stmt = (
            select(Listing.id)
            .where(
                Listing.status.in_(STALE_DRAFT_STATUSES),
                Listing.posted_at < self.cutoff,
            )
            .order_by(Listing.posted_at.asc(), Listing.id.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
        )
        ids = (await db.execute(stmt)).scalars().all()
        if not ids:
            return 0

        # children first; not every store enforces ON DELETE CASCADE
        await db.execute(delete(PriceHistoryEntry).where(PriceHistoryEntry.listing_id.in_(ids)))
        await db.execute(delete(WatchlistEntry).where(WatchlistEntry.listing_id.in_(ids)))
        await db.execute(delete(Notification).where(Notification.listing_id.in_(ids)))
        # status guard: a listing promoted since it was selected is left alone
        await db.execute(
            delete(Listing)
            .where(Listing.id.in_(ids), Listing.status.in_(STALE_DRAFT_STATUSES))
            .execution_options(synchronize_session=False)
        )
        return len(ids)


async def expire_listings(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    stop: asyncio.Event | None = None,
) -> JobRunResult:
    """ACTIVE listings past expires_at become EXPIRED. Re-running is a no-op."""
    now = now or datetime.now(timezone.utc)
    return await run_in_batches(session_factory, ExpireListingsJob(now), batch_size=batch_size, stop=stop)


async def cleanup_stale_drafts(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
    retention_days: int | None = None,
    batch_size: int | None = None,
    stop: asyncio.Event | None = None,
) -> JobRunResult:
    """Delete DRAFT/PENDING listings posted before the retention window, with their history."""
    now = now or datetime.now(timezone.utc)
    retention_days = settings.draft_retention_days if retention_days is None else retention_days
    cutoff = now - timedelta(days=retention_days)
    log.info("cleanup_stale_drafts: removing DRAFT/PENDING posted before %s", cutoff.isoformat())
    return await run_in_batches(session_factory, CleanupStaleDraftsJob(cutoff), batch_size=batch_size, stop=stop)
