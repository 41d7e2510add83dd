from datetime import datetime

from sqlalchemy import ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from market_engine.models.base import Base


class WatchlistEntry(Base):
    # written by buyer features, read here for notification fan-out
    __tablename__ = "watchlist_entries"
    __table_args__ = (
        Index("ix_watchlist_listing", "listing_id"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True)

    saved_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
