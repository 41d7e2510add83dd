from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import event, select

from market_engine.models.listing import ListingStatus
from market_engine.models.market_snapshot import MarketSnapshot
from market_engine.services.market_stats import (
    average_active_price,
    capture_market_snapshot,
    capture_snapshot,
    compute_market_stats,
    latest_snapshot,
)

from tests.fixtures_seed import NOW, add_active_market, add_listing, add_vehicle, as_utc, count_rows, money


def _dec(value):
    return None if value is None else money(value)


@pytest.mark.asyncio
async def test_snapshot_of_empty_market(session_factory):
    snapshot = await capture_market_snapshot(session_factory, now=NOW)

    assert snapshot.id.startswith("mks_")
    assert snapshot.active_listings == 0
    assert snapshot.avg_price is None
    assert snapshot.median_price is None
    assert snapshot.avg_mileage_km is None


@pytest.mark.asyncio
async def test_even_count_median_takes_upper_middle(session_factory, db_session):
    # floor(n/2) rank: {10000, 20000, 30000, 40000} reports 30000, not 25000
    await add_active_market(db_session, [40000, 10000, 30000, 20000])
    await db_session.commit()

    snapshot = await capture_market_snapshot(session_factory, now=NOW)

    assert snapshot.active_listings == 4
    assert _dec(snapshot.avg_price) == Decimal("25000.00")
    assert _dec(snapshot.median_price) == Decimal("30000.00")


@pytest.mark.asyncio
async def test_odd_count_median_and_mileage(db_session):
    await add_active_market(db_session, [15000, 5000, 9999.99], mileage_km=80000)

    stats = await compute_market_stats(db_session)

    assert stats.active_listings == 3
    assert _dec(stats.median_price) == Decimal("9999.99")
    assert _dec(stats.avg_price) == Decimal("10000.00")
    assert _dec(stats.avg_mileage_km) == Decimal("80000.00")


@pytest.mark.asyncio
async def test_only_active_listings_are_counted(db_session):
    await add_active_market(db_session, [20000])
    for n, status in ((201, ListingStatus.DRAFT), (202, ListingStatus.SOLD), (203, ListingStatus.EXPIRED)):
        vehicle = await add_vehicle(db_session, n)
        await add_listing(db_session, vehicle.vin, 99000, status)

    stats = await compute_market_stats(db_session)

    assert stats.active_listings == 1
    assert _dec(stats.avg_price) == Decimal("20000.00")
    assert _dec(stats.median_price) == Decimal("20000.00")


@pytest.mark.asyncio
async def test_snapshots_are_appended(session_factory, db_session):
    await add_active_market(db_session, [10000])
    await db_session.commit()

    first = await capture_market_snapshot(session_factory, now=NOW)
    async with session_factory() as db:
        await add_active_market(db, [30000], start=300)
        await db.commit()
    second = await capture_market_snapshot(session_factory, now=NOW + timedelta(days=1))

    async with session_factory() as db:
        assert await count_rows(db, MarketSnapshot) == 2
        rows = {s.id: s for s in (await db.execute(select(MarketSnapshot))).scalars().all()}
        latest = await latest_snapshot(db)

    assert rows[first.id].active_listings == 1
    assert _dec(rows[first.id].avg_price) == Decimal("10000.00")
    assert rows[second.id].active_listings == 2
    assert latest.id == second.id
    assert as_utc(latest.snapshot_at) == NOW + timedelta(days=1)


@pytest.mark.asyncio
async def test_latest_snapshot_when_none(db_session):
    assert await latest_snapshot(db_session) is None


@pytest.mark.asyncio
async def test_capture_snapshot_in_callers_transaction(db_session):
    await add_active_market(db_session, [12345.67])
    snapshot = await capture_snapshot(db_session, now=NOW)
    assert snapshot.active_listings == 1
    assert _dec(snapshot.median_price) == Decimal("12345.67")


@pytest.mark.asyncio
async def test_average_active_price_by_model(db_session):
    await add_active_market(db_session, [10000, 20000], start=100, model_id=1)
    await add_active_market(db_session, [50000], start=200, model_id=2)

    assert _dec(await average_active_price(db_session)) == Decimal("26666.67")
    assert _dec(await average_active_price(db_session, model_id=1)) == Decimal("15000.00")
    assert _dec(await average_active_price(db_session, model_id=2)) == Decimal("50000.00")
    assert await average_active_price(db_session, model_id=3) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("prices,median", [
    ([500], "500"),
    ([900, 100], "900"),
    ([300, 100, 200], "200"),
    ([10, 40, 30, 20, 50], "30"),
])
async def test_median_is_floor_half_rank(db_session, prices, median):
    await add_active_market(db_session, prices)
    stats = await compute_market_stats(db_session)
    assert _dec(stats.median_price) == money(median)


@pytest.mark.asyncio
async def test_stats_are_read_in_one_statement(async_engine, db_session):
    await add_active_market(db_session, [10000, 20000, 30000])
    await db_session.flush()
    statements = []

    def _record(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(async_engine.sync_engine, "before_cursor_execute", _record)
    try:
        stats = await compute_market_stats(db_session)
    finally:
        event.remove(async_engine.sync_engine, "before_cursor_execute", _record)

    assert len(statements) == 1
    assert stats.active_listings == 3
    assert _dec(stats.median_price) == Decimal("20000.00")
