from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, ForeignKey, Index, Numeric, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from market_engine.models.base import Base, AuditMixin, gen_id


class ListingStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    SOLD = "SOLD"
    EXPIRED = "EXPIRED"
    REMOVED = "REMOVED"


TERMINAL_STATUSES = frozenset({ListingStatus.SOLD, ListingStatus.EXPIRED, ListingStatus.REMOVED})


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        CheckConstraint("asking_price > 0", name="ck_listing_price"),
        CheckConstraint(
            "status IN ('DRAFT','PENDING','ACTIVE','SOLD','EXPIRED','REMOVED')",
            name="ck_listing_status",
        ),
        # at most one ACTIVE listing per VIN, enforced by the store itself
        Index(
            "uq_listings_active_vin",
            "vin",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_listings_status_price", "status", "asking_price"),
        Index("ix_listings_status_expires", "status", "expires_at"),
        Index("ix_listings_posted_at", "posted_at"),
        Index("ix_listings_vin_status", "vin", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))

    vin: Mapped[str] = mapped_column(String(17), ForeignKey("vehicles.vin"), nullable=False)

    # seller / location records are owned by other services
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    location_id: Mapped[str] = mapped_column(String(64), nullable=False)

    asking_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="CAD")

    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ListingStatus.DRAFT.value)

    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sold_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
