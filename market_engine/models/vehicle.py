from sqlalchemy import Boolean, CheckConstraint, Index, Integer, SmallInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from market_engine.models.base import Base, AuditMixin


class Vehicle(AuditMixin, Base):
    """
    VIN-level vehicle. Owned by the catalog / vehicle-intake side;
    the listing engine only reads it (mileage for market snapshots, existence on listing).
    """
    __tablename__ = "vehicles"
    __table_args__ = (
        CheckConstraint("length(vin) = 17", name="ck_vehicle_vin_len"),
        CheckConstraint("mileage_km >= 0", name="ck_vehicle_mileage"),
        CheckConstraint("vehicle_year >= 1980", name="ck_vehicle_year"),
        Index("ix_vehicles_model_year", "model_id", "vehicle_year"),
    )

    vin: Mapped[str] = mapped_column(String(17), primary_key=True)

    # catalog Model id (catalog tables live elsewhere)
    model_id: Mapped[int] = mapped_column(Integer, nullable=False)
    vehicle_year: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    trim: Mapped[str | None] = mapped_column(String(60), nullable=True)

    mileage_km: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # NEW | USED | CERTIFIED
    condition_type: Mapped[str] = mapped_column(String(12), nullable=False, default="USED")
    # CLEAN | REBUILT | SALVAGE | UNKNOWN
    title_status: Mapped[str] = mapped_column(String(12), nullable=False, default="UNKNOWN")
    accident_flag: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
