from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from market_engine.models.base import Base, JsonDoc, gen_id


class NotificationType(str, Enum):
    PRICE_DROP = "PRICE_DROP"
    LISTING_SOLD = "LISTING_SOLD"
    LISTING_EXPIRED = "LISTING_EXPIRED"


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        CheckConstraint("type IN ('PRICE_DROP','LISTING_SOLD','LISTING_EXPIRED')", name="ck_notification_type"),
        Index("ix_notifications_user_time", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("ntf"))

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False)

    type: Mapped[str] = mapped_column(String(20), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonDoc, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    # set by the delivery side once the user has seen it
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
