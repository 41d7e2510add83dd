from datetime import datetime
from decimal import Decimal

from sqlalchemy import Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from market_engine.models.base import Base, gen_id


class MarketSnapshot(Base):
    """
    Point-in-time market statistics over ACTIVE listings. One row per aggregation run;
    rows are never updated.
    """
    __tablename__ = "market_snapshots"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("mks"))

    snapshot_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    active_listings: Mapped[int] = mapped_column(Integer, nullable=False)

    avg_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    median_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    avg_mileage_km: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
