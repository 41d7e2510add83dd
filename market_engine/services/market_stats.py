from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_engine.models.listing import Listing, ListingStatus
from market_engine.models.market_snapshot import MarketSnapshot
from market_engine.models.vehicle import Vehicle
from market_engine.services.batches import run_once


log = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class MarketStats:
    active_listings: int
    avg_price: Decimal | None
    median_price: Decimal | None
    avg_mileage_km: Decimal | None


def _money(value) -> Decimal | None:
    # AVG comes back as Decimal on postgres and float on sqlite
    if value is None:
        return None
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


async def compute_market_stats(db: AsyncSession) -> MarketStats:
    """
    Count, means and median over ACTIVE listings, read in one statement so all
    four figures describe the same set of rows.

    The "median" is the price at 0-indexed ascending rank floor(count / 2). For
    even counts this is the upper of the two middle values rather than their
    mean ({10, 20, 30, 40} -> 30, not 25). Market snapshots have always been
    computed this way, so the approximation is kept for comparability.
    """
    ranked = (
        select(
            Listing.asking_price.label("price"),
            Vehicle.mileage_km.label("mileage_km"),
            func.row_number().over(order_by=(Listing.asking_price.asc(), Listing.id.asc())).label("rn"),
            func.count().over().label("n"),
        )
        .select_from(Listing)
        .join(Vehicle, Vehicle.vin == Listing.vin)
        .where(Listing.status == ListingStatus.ACTIVE.value)
        .subquery()
    )
    # rank floor(n/2) without integer division: 2 * (rn - 1) is n or n - 1
    twice_rank = 2 * (ranked.c.rn - 1)
    at_median = or_(twice_rank == ranked.c.n, twice_rank == ranked.c.n - 1)
    stmt = select(
        func.count(),
        func.avg(ranked.c.price),
        func.avg(ranked.c.mileage_km),
        func.max(case((at_median, ranked.c.price))),
    ).select_from(ranked)

    count, avg_price, avg_mileage, median_price = (await db.execute(stmt)).one()
    count = int(count or 0)

    return MarketStats(
        active_listings=count,
        avg_price=_money(avg_price) if count else None,
        median_price=_money(median_price) if count else None,
        avg_mileage_km=_money(avg_mileage) if count else None,
    )


async def capture_snapshot(db: AsyncSession, *, now: datetime | None = None) -> MarketSnapshot:
    """Append one MarketSnapshot computed from the current ACTIVE listings."""
    stats = await compute_market_stats(db)
    snapshot = MarketSnapshot(
        snapshot_at=now or datetime.now(timezone.utc),
        active_listings=stats.active_listings,
        avg_price=stats.avg_price,
        median_price=stats.median_price,
        avg_mileage_km=stats.avg_mileage_km,
    )
    db.add(snapshot)
    await db.flush()
    log.info(
        "market snapshot id=%s active=%d avg=%s median=%s",
        snapshot.id, stats.active_listings, stats.avg_price, stats.median_price,
    )
    return snapshot


async def capture_market_snapshot(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    now: datetime | None = None,
) -> MarketSnapshot:
    return await run_once(session_factory, lambda db: capture_snapshot(db, now=now), job="capture_market_snapshot")


async def average_active_price(db: AsyncSession, model_id: int | None = None) -> Decimal | None:
    stmt = (
        select(func.avg(Listing.asking_price))
        .select_from(Listing)
        .join(Vehicle, Vehicle.vin == Listing.vin)
        .where(Listing.status == ListingStatus.ACTIVE.value)
    )
    if model_id is not None:
        stmt = stmt.where(Vehicle.model_id == model_id)
    return _money((await db.execute(stmt)).scalar_one())


async def latest_snapshot(db: AsyncSession) -> MarketSnapshot | None:
    stmt = select(MarketSnapshot).order_by(MarketSnapshot.snapshot_at.desc(), MarketSnapshot.id.desc()).limit(1)
    return (await db.execute(stmt)).scalar_one_or_none()
