from __future__ import annotations
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_engine.core.config import settings
from market_engine.models.notification import Notification, NotificationType
from market_engine.models.outbox import OutboxEvent
from market_engine.models.price_history import PriceHistoryEntry
from market_engine.models.watchlist import WatchlistEntry
from market_engine.schemas.notification import PriceDropPayload
from market_engine.services.batches import BatchJob, JobRunResult, run_in_batches
from market_engine.services.errors import ValidationError


log = logging.getLogger(__name__)

NOTIFICATION_TYPE_BY_EVENT = {
    "listing.sold": NotificationType.LISTING_SOLD,
    "listing.expired": NotificationType.LISTING_EXPIRED,
}


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def trailing_window(now: datetime, hours: int | None = None) -> tuple[datetime, datetime]:
    """
    Latest complete window of `hours` whose end is a whole multiple of `hours`
    since the epoch. Calls within one period get the same range and successive
    periods tile without overlap.
    """
    span = timedelta(hours=hours or settings.price_drop_window_hours)
    end = EPOCH + ((now - EPOCH) // span) * span
    return end - span, end


async def _watchers_by_listing(db: AsyncSession, listing_ids: set[str]) -> dict[str, list[str]]:
    rows = (await db.execute(
        select(WatchlistEntry.listing_id, WatchlistEntry.user_id)
        .where(WatchlistEntry.listing_id.in_(listing_ids))
        .order_by(WatchlistEntry.listing_id, WatchlistEntry.user_id)
    )).all()
    watchers: dict[str, list[str]] = defaultdict(list)
    for listing_id, user_id in rows:
        watchers[listing_id].append(user_id)
    return watchers


class PriceDropNotificationJob(BatchJob):
    """
    Walks price drops in [window_start, window_end) ordered by (changed_at, id)
    and fans each one out to the listing's watchers.

    Overlapping windows are not deduplicated: scheduling them apart is up to the caller.
    """
    name = "notify_price_drops"

    def __init__(self, window_start: datetime, window_end: datetime):
        self.window_start = window_start
        self.window_end = window_end
        self.created = 0
        self._cursor: tuple[datetime, str] | None = None
        self._next_cursor: tuple[datetime, str] | None = None
        self._pending_created = 0

    async def run_batch(self, db: AsyncSession, limit: int) -> int:
        stmt = select(PriceHistoryEntry).where(
            PriceHistoryEntry.changed_at >= self.window_start,
            PriceHistoryEntry.changed_at < self.window_end,
            PriceHistoryEntry.new_price < PriceHistoryEntry.old_price,
        )
        if self._cursor is not None:
            changed_at, entry_id = self._cursor
            stmt = stmt.where(or_(
                PriceHistoryEntry.changed_at > changed_at,
                and_(PriceHistoryEntry.changed_at == changed_at, PriceHistoryEntry.id > entry_id),
            ))
        stmt = stmt.order_by(PriceHistoryEntry.changed_at.asc(), PriceHistoryEntry.id.asc()).limit(limit)

        entries = (await db.execute(stmt)).scalars().all()
        if not entries:
            return 0

        watchers = await _watchers_by_listing(db, {e.listing_id for e in entries})

        created = 0
        for entry in entries:
            payload = PriceDropPayload(
                old_price=entry.old_price,
                new_price=entry.new_price,
                changed_at=entry.changed_at,
            ).to_json_dict()
            for user_id in watchers.get(entry.listing_id, []):
                db.add(Notification(
                    user_id=user_id,
                    listing_id=entry.listing_id,
                    type=NotificationType.PRICE_DROP.value,
                    payload=payload,
                ))
                created += 1
        await db.flush()

        last = entries[-1]
        self._next_cursor = (last.changed_at, last.id)
        self._pending_created = created
        return len(entries)

    def batch_committed(self) -> None:
        if self._next_cursor is not None:
            self._cursor = self._next_cursor
        self.created += self._pending_created
        self._pending_created = 0


class LifecycleNotificationJob(BatchJob):
    """
    Consumes pending listing.sold / listing.expired outbox events. Notifications
    and the event's "done" mark commit together, so each event fans out once.
    """
    name = "dispatch_lifecycle_notifications"

    def __init__(self, now: datetime):
        self.now = now
        self.created = 0
        self._pending_created = 0

    async def run_batch(self, db: AsyncSession, limit: int) -> int:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.status == "pending",
                OutboxEvent.aggregate_type == "listing",
                OutboxEvent.event_type.in_(list(NOTIFICATION_TYPE_BY_EVENT)),
            )
            .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
            .with_for_update(skip_locked=True)
            .limit(limit)
        )
        events = (await db.execute(stmt)).scalars().all()
        if not events:
            return 0

        watchers = await _watchers_by_listing(db, {ev.aggregate_id for ev in events})

        created = 0
        for ev in events:
            ntype = NOTIFICATION_TYPE_BY_EVENT[ev.event_type]
            for user_id in watchers.get(ev.aggregate_id, []):
                db.add(Notification(
                    user_id=user_id,
                    listing_id=ev.aggregate_id,
                    type=ntype.value,
                    payload=dict(ev.payload),
                ))
                created += 1
            ev.status = "done"
            ev.attempts = (ev.attempts or 0) + 1
            ev.processed_at = self.now
        await db.flush()

        self._pending_created = created
        return len(events)

    def batch_committed(self) -> None:
        self.created += self._pending_created
        self._pending_created = 0


async def dispatch_price_drop_notifications(
    session_factory: async_sessionmaker[AsyncSession],
    window_start: datetime | None = None,
    window_end: datetime | None = None,
    *,
    batch_size: int | None = None,
    stop: asyncio.Event | None = None,
) -> JobRunResult:
    """
    One PRICE_DROP notification per (watcher, price drop) in the window.
    Defaults to the trailing `price_drop_window_hours` ending now.
    """
    window_end = window_end or datetime.now(timezone.utc)
    window_start = window_start or (window_end - timedelta(hours=settings.price_drop_window_hours))
    if window_start >= window_end:
        raise ValidationError("window_start must be before window_end",
                              window_start=window_start.isoformat(), window_end=window_end.isoformat())

    job = PriceDropNotificationJob(window_start, window_end)
    result = await run_in_batches(session_factory, job, batch_size=batch_size, stop=stop)
    log.info("price drops %s..%s: %d notifications", window_start.isoformat(), window_end.isoformat(), job.created)
    return result


async def dispatch_lifecycle_notifications(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
    stop: asyncio.Event | None = None,
) -> JobRunResult:
    job = LifecycleNotificationJob(now or datetime.now(timezone.utc))
    result = await run_in_batches(session_factory, job, batch_size=batch_size, stop=stop)
    log.info("lifecycle events: %d notifications", job.created)
    return result
