from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_listing_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "vehicles",
        sa.Column("vin", sa.String(length=17), primary_key=True),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("vehicle_year", sa.SmallInteger(), nullable=False),
        sa.Column("trim", sa.String(length=60), nullable=True),
        sa.Column("mileage_km", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("condition_type", sa.String(length=12), nullable=False, server_default="USED"),
        sa.Column("title_status", sa.String(length=12), nullable=False, server_default="UNKNOWN"),
        sa.Column("accident_flag", sa.Boolean(), nullable=False, server_default=sa.false()),

        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),

        sa.CheckConstraint("length(vin) = 17", name="ck_vehicle_vin_len"),
        sa.CheckConstraint("mileage_km >= 0", name="ck_vehicle_mileage"),
        sa.CheckConstraint("vehicle_year >= 1980", name="ck_vehicle_year"),
    )
    op.create_index("ix_vehicles_model_year", "vehicles", ["model_id", "vehicle_year"])

    op.create_table(
        "listings",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("vin", sa.String(length=17), sa.ForeignKey("vehicles.vin"), nullable=False),
        sa.Column("seller_id", sa.String(length=64), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),

        sa.Column("asking_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="CAD"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),

        sa.Column("posted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),

        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),

        sa.CheckConstraint("asking_price > 0", name="ck_listing_price"),
        sa.CheckConstraint(
            "status IN ('DRAFT','PENDING','ACTIVE','SOLD','EXPIRED','REMOVED')",
            name="ck_listing_status",
        ),
    )
    # single ACTIVE listing per VIN
    op.create_index(
        "uq_listings_active_vin",
        "listings",
        ["vin"],
        unique=True,
        postgresql_where=sa.text("status = 'ACTIVE'"),
    )
    op.create_index("ix_listings_status_price", "listings", ["status", "asking_price"])
    op.create_index("ix_listings_status_expires", "listings", ["status", "expires_at"])
    op.create_index("ix_listings_posted_at", "listings", ["posted_at"])
    op.create_index("ix_listings_vin_status", "listings", ["vin", "status"])

    op.create_table(
        "listing_price_history",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("old_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("new_price", sa.Numeric(12, 2), nullable=False),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_price_history_listing_time", "listing_price_history", ["listing_id", "changed_at"])
    op.create_index("ix_price_history_changed_at", "listing_price_history", ["changed_at"])

    op.create_table(
        "watchlist_entries",
        sa.Column("user_id", sa.String(length=64), primary_key=True),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("saved_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_watchlist_listing", "watchlist_entries", ["listing_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("listing_id", sa.String(), sa.ForeignKey("listings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("type IN ('PRICE_DROP','LISTING_SOLD','LISTING_EXPIRED')", name="ck_notification_type"),
    )
    op.create_index("ix_notifications_user_time", "notifications", ["user_id", "created_at"])

    op.create_table(
        "market_snapshots",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("snapshot_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("active_listings", sa.Integer(), nullable=False),
        sa.Column("avg_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("median_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("avg_mileage_km", sa.Numeric(12, 2), nullable=True),
    )
    op.create_index("ix_market_snapshots_snapshot_at", "market_snapshots", ["snapshot_at"])

    op.create_table(
        "outbox",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_id", sa.String(length=100), nullable=False),
        sa.Column("event_type", sa.String(length=200), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_outbox_status_created", "outbox", ["status", "created_at"])


def downgrade():
    op.drop_index("ix_outbox_status_created", table_name="outbox")
    op.drop_table("outbox")
    op.drop_index("ix_market_snapshots_snapshot_at", table_name="market_snapshots")
    op.drop_table("market_snapshots")
    op.drop_index("ix_notifications_user_time", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_watchlist_listing", table_name="watchlist_entries")
    op.drop_table("watchlist_entries")
    op.drop_index("ix_price_history_changed_at", table_name="listing_price_history")
    op.drop_index("ix_price_history_listing_time", table_name="listing_price_history")
    op.drop_table("listing_price_history")
    op.drop_index("ix_listings_vin_status", table_name="listings")
    op.drop_index("ix_listings_posted_at", table_name="listings")
    op.drop_index("ix_listings_status_expires", table_name="listings")
    op.drop_index("ix_listings_status_price", table_name="listings")
    op.drop_index("uq_listings_active_vin", table_name="listings")
    op.drop_table("listings")
    op.drop_index("ix_vehicles_model_year", table_name="vehicles")
    op.drop_table("vehicles")
