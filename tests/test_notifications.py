from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from market_engine.models.listing import ListingStatus
from market_engine.models.notification import Notification
from market_engine.models.outbox import OutboxEvent
from market_engine.schemas.notification import PriceDropPayload
from market_engine.services.errors import ValidationError
from market_engine.services.listing_state import change_price, change_status
from market_engine.services.notifications import (
    dispatch_lifecycle_notifications,
    dispatch_price_drop_notifications,
    trailing_window,
)

from tests.fixtures_seed import NOW, add_active_market, add_listing, as_utc, count_rows, watch


WINDOW = (NOW - timedelta(hours=24), NOW)


async def _notifications(session_factory) -> list[Notification]:
    async with session_factory() as db:
        stmt = select(Notification).order_by(Notification.user_id, Notification.id)
        return list((await db.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_price_drop_notifies_watcher_once(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 25000, ListingStatus.ACTIVE)
    await watch(db_session, "usr_u", listing.id)
    await change_price(db_session, listing.id, 20000, now=NOW - timedelta(hours=1))
    await db_session.commit()

    result = await dispatch_price_drop_notifications(session_factory, *WINDOW)

    assert result.rows == 1
    notes = await _notifications(session_factory)
    assert len(notes) == 1
    note = notes[0]
    assert note.id.startswith("ntf_")
    assert (note.user_id, note.listing_id, note.type) == ("usr_u", listing.id, "PRICE_DROP")
    assert note.read_at is None
    # prices are JSON numbers, not strings
    assert note.payload["oldPrice"] == 25000
    assert note.payload["newPrice"] == 20000
    assert isinstance(note.payload["newPrice"], float)
    assert as_utc(datetime.fromisoformat(note.payload["changedAt"])) == NOW - timedelta(hours=1)


@pytest.mark.asyncio
async def test_price_rise_does_not_notify(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 25000, ListingStatus.ACTIVE)
    await watch(db_session, "usr_u", listing.id)
    await change_price(db_session, listing.id, 26000, now=NOW - timedelta(hours=1))
    await db_session.commit()

    result = await dispatch_price_drop_notifications(session_factory, *WINDOW)

    assert result.rows == 0
    assert await _notifications(session_factory) == []


@pytest.mark.asyncio
async def test_window_is_half_open(session_factory, db_session):
    before, at_start, at_end = await add_active_market(db_session, [30000, 30000, 30000])
    for listing in (before, at_start, at_end):
        await watch(db_session, "usr_u", listing.id)
    await change_price(db_session, before.id, 29000, now=WINDOW[0] - timedelta(seconds=1))
    await change_price(db_session, at_start.id, 29000, now=WINDOW[0])
    await change_price(db_session, at_end.id, 29000, now=WINDOW[1])
    await db_session.commit()

    await dispatch_price_drop_notifications(session_factory, *WINDOW)

    assert [n.listing_id for n in await _notifications(session_factory)] == [at_start.id]


@pytest.mark.asyncio
async def test_every_watcher_gets_one_notification_per_drop(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 25000, ListingStatus.ACTIVE)
    for user_id in ("usr_a", "usr_b", "usr_c"):
        await watch(db_session, user_id, listing.id)
    await change_price(db_session, listing.id, 24000, now=NOW - timedelta(hours=3))
    await change_price(db_session, listing.id, 23000, now=NOW - timedelta(hours=2))
    await db_session.commit()

    await dispatch_price_drop_notifications(session_factory, *WINDOW)

    notes = await _notifications(session_factory)
    assert len(notes) == 6
    assert sorted({n.user_id for n in notes}) == ["usr_a", "usr_b", "usr_c"]


@pytest.mark.asyncio
async def test_unwatched_drop_creates_nothing(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 25000, ListingStatus.ACTIVE)
    await change_price(db_session, listing.id, 20000, now=NOW - timedelta(hours=1))
    await db_session.commit()

    result = await dispatch_price_drop_notifications(session_factory, *WINDOW)

    assert result.rows == 1
    assert await _notifications(session_factory) == []


@pytest.mark.asyncio
async def test_overlapping_windows_are_not_deduplicated(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 25000, ListingStatus.ACTIVE)
    await watch(db_session, "usr_u", listing.id)
    await change_price(db_session, listing.id, 20000, now=NOW - timedelta(hours=1))
    await db_session.commit()

    await dispatch_price_drop_notifications(session_factory, *WINDOW)
    await dispatch_price_drop_notifications(session_factory, NOW - timedelta(hours=2), NOW)

    assert len(await _notifications(session_factory)) == 2


@pytest.mark.asyncio
async def test_drops_are_paged_across_batches(session_factory, db_session):
    listings = await add_active_market(db_session, [50000] * 5)
    for listing in listings:
        await watch(db_session, "usr_u", listing.id)
    # two drops share a timestamp so paging has to break ties on id
    same_time = NOW - timedelta(hours=5)
    for i, listing in enumerate(listings):
        changed_at = same_time if i < 2 else NOW - timedelta(hours=i)
        await change_price(db_session, listing.id, 40000, now=changed_at)
    await db_session.commit()

    result = await dispatch_price_drop_notifications(session_factory, *WINDOW, batch_size=2)

    assert (result.batches, result.rows) == (3, 5)
    notes = await _notifications(session_factory)
    assert sorted(n.listing_id for n in notes) == sorted(listing.id for listing in listings)


@pytest.mark.asyncio
async def test_empty_or_inverted_window_is_rejected(session_factory):
    with pytest.raises(ValidationError):
        await dispatch_price_drop_notifications(session_factory, NOW, NOW)
    with pytest.raises(ValidationError):
        await dispatch_price_drop_notifications(session_factory, NOW, NOW - timedelta(hours=1))


def test_trailing_window_aligns_to_whole_periods():
    start, end = trailing_window(datetime(2026, 3, 15, 17, 42, tzinfo=timezone.utc), hours=24)
    assert (start, end) == (
        datetime(2026, 3, 14, tzinfo=timezone.utc),
        datetime(2026, 3, 15, tzinfo=timezone.utc),
    )
    # any time in the same period maps to the same window
    assert trailing_window(datetime(2026, 3, 15, 0, 1, tzinfo=timezone.utc), hours=24) == (start, end)
    # consecutive periods tile without overlap
    assert trailing_window(datetime(2026, 3, 16, 9, tzinfo=timezone.utc), hours=24)[0] == end


@pytest.mark.asyncio
async def test_sold_and_expired_notify_watchers(session_factory, db_session):
    sold, expired = await add_active_market(db_session, [20000, 30000])
    await watch(db_session, "usr_a", sold.id)
    await watch(db_session, "usr_b", sold.id)
    await watch(db_session, "usr_a", expired.id)
    await change_status(db_session, sold.id, ListingStatus.SOLD, now=NOW)
    await change_status(db_session, expired.id, ListingStatus.EXPIRED, now=NOW)
    await db_session.commit()

    result = await dispatch_lifecycle_notifications(session_factory, now=NOW)

    assert result.rows == 2
    notes = await _notifications(session_factory)
    assert sorted((n.user_id, n.listing_id, n.type) for n in notes) == sorted([
        ("usr_a", sold.id, "LISTING_SOLD"),
        ("usr_b", sold.id, "LISTING_SOLD"),
        ("usr_a", expired.id, "LISTING_EXPIRED"),
    ])
    sold_note = next(n for n in notes if n.type == "LISTING_SOLD")
    assert sold_note.payload["listingId"] == sold.id
    assert sold_note.payload["status"] == "SOLD"

    async with session_factory() as db:
        events = (await db.execute(select(OutboxEvent))).scalars().all()
    assert {e.status for e in events} == {"done"}
    assert {e.attempts for e in events} == {1}
    assert set(OutboxEvent.__table__.c.keys()) >= {"status", "attempts", "processed_at"}
    assert "last_error" not in OutboxEvent.__table__.c
    assert all(as_utc(e.processed_at) == NOW for e in events)


@pytest.mark.asyncio
async def test_lifecycle_events_fan_out_once(session_factory, db_session, seed_vehicle):
    listing = await add_listing(db_session, seed_vehicle.vin, 20000, ListingStatus.ACTIVE)
    await watch(db_session, "usr_a", listing.id)
    await change_status(db_session, listing.id, ListingStatus.SOLD, now=NOW)
    await db_session.commit()

    first = await dispatch_lifecycle_notifications(session_factory, now=NOW)
    second = await dispatch_lifecycle_notifications(session_factory, now=NOW + timedelta(minutes=1))

    assert (first.rows, second.rows) == (1, 0)
    async with session_factory() as db:
        assert await count_rows(db, Notification) == 1


def test_price_drop_payload_keeps_cents_as_numbers():
    payload = PriceDropPayload(
        old_price=Decimal("19999.99"),
        new_price=Decimal("18500.50"),
        changed_at=datetime(2026, 3, 15, 12, tzinfo=timezone.utc),
    ).to_json_dict()

    assert payload == {"oldPrice": 19999.99, "newPrice": 18500.5, "changedAt": "2026-03-15T12:00:00Z"}
    assert Decimal(str(payload["oldPrice"])) == Decimal("19999.99")
