from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from market_engine.models.base import Base, gen_id


class PriceHistoryEntry(Base):
    """
    Append-only audit of asking-price changes. Rows are never updated;
    they only go away together with their listing.
    """
    __tablename__ = "listing_price_history"
    __table_args__ = (
        Index("ix_price_history_listing_time", "listing_id", "changed_at"),
        Index("ix_price_history_changed_at", "changed_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lph"))
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)

    old_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    new_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
