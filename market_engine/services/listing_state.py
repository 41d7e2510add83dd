from __future__ import annotations
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from market_engine.core.config import settings
from market_engine.models.listing import Listing, ListingStatus, TERMINAL_STATUSES
from market_engine.models.outbox import OutboxEvent
from market_engine.models.vehicle import Vehicle
from market_engine.schemas.notification import ListingLifecyclePayload
from market_engine.services.errors import (
    ConflictError,
    InvalidTransitionError,
    ListingNotFoundError,
    ValidationError,
    store_errors,
)
from market_engine.services.price_history import record_change


log = logging.getLogger(__name__)

CENTS = Decimal("0.01")
MAX_PRICE = Decimal("9999999999.99")  # NUMERIC(12,2)
VIN_LENGTH = 17

ALLOWED_TRANSITIONS: dict[ListingStatus, frozenset[ListingStatus]] = {
    ListingStatus.DRAFT: frozenset({ListingStatus.PENDING, ListingStatus.REMOVED}),
    ListingStatus.PENDING: frozenset({ListingStatus.ACTIVE, ListingStatus.REMOVED}),
    ListingStatus.ACTIVE: frozenset({ListingStatus.SOLD, ListingStatus.EXPIRED, ListingStatus.REMOVED}),
    ListingStatus.SOLD: frozenset(),
    ListingStatus.EXPIRED: frozenset(),
    ListingStatus.REMOVED: frozenset(),
}

LIFECYCLE_EVENT_TYPES = {
    ListingStatus.SOLD: "listing.sold",
    ListingStatus.EXPIRED: "listing.expired",
}


def parse_status(value: Any) -> ListingStatus:
    if isinstance(value, ListingStatus):
        return value
    try:
        return ListingStatus(str(value).upper().strip())
    except ValueError:
        raise ValidationError(f"Invalid listing status: {value!r}", status=value) from None


def normalize_price(value: Any) -> Decimal:
    """
    Coerce an asking price to a two-digit fixed-point Decimal.
    Rejects non-positive, non-finite, over-precise and out-of-range values.
    """
    if value is None or isinstance(value, bool):
        raise ValidationError("Asking price is required", price=value)
    try:
        price = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Invalid asking price: {value!r}", price=str(value)) from None

    if not price.is_finite():
        raise ValidationError("Asking price must be a finite number", price=str(value))
    if price <= 0:
        raise ValidationError("Asking price must be positive", price=str(value))
    if price > MAX_PRICE:
        raise ValidationError("Asking price is too large", price=str(value))
    if price != price.quantize(CENTS):
        raise ValidationError("Asking price allows at most two fraction digits", price=str(value))
    return price.quantize(CENTS)


def prices_differ(old: Decimal | None, new: Decimal | None) -> bool:
    # null-safe: two missing prices are equal
    if old is None and new is None:
        return False
    if old is None or new is None:
        return True
    return old != new


def _normalize_vin(vin: str) -> str:
    vin_norm = (vin or "").strip().upper()
    if len(vin_norm) != VIN_LENGTH:
        raise ValidationError(f"VIN must be exactly {VIN_LENGTH} characters", vin=vin)
    return vin_norm


def _normalize_currency(currency: str | None) -> str:
    cur = (currency or settings.default_currency).strip().upper()
    if len(cur) != 3 or not cur.isalpha():
        raise ValidationError("Currency must be a 3-letter code", currency=currency)
    return cur


def _is_active_vin_violation(e: IntegrityError) -> bool:
    msg = str(e.orig)
    # postgres reports the index name, sqlite the indexed column
    return "uq_listings_active_vin" in msg or "listings.vin" in msg


async def _assert_no_other_active(db: AsyncSession, vin: str, exclude_id: str | None = None) -> None:
    stmt = select(Listing.id).where(
        Listing.vin == vin,
        Listing.status == ListingStatus.ACTIVE.value,
    )
    if exclude_id is not None:
        stmt = stmt.where(Listing.id != exclude_id)
    if (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None:
        raise ConflictError("VIN already has an active listing", vin=vin)


async def _flush_guarding_active_vin(db: AsyncSession, vin: str) -> None:
    """
    Flush pending writes. The partial unique index on (vin) WHERE status = 'ACTIVE'
    is what actually closes the check-then-act race; a violation here means a
    concurrent activation won, so the transaction is rolled back.
    """
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        if _is_active_vin_violation(e):
            raise ConflictError("VIN already has an active listing", vin=vin) from e
        raise


async def _get_for_update(db: AsyncSession, listing_id: str) -> Listing:
    stmt = select(Listing).where(Listing.id == listing_id).with_for_update()
    listing = (await db.execute(stmt)).scalar_one_or_none()
    if listing is None:
        raise ListingNotFoundError("Listing not found", listing_id=listing_id)
    return listing


def emit_lifecycle_event(db: AsyncSession, listing: Listing, status: ListingStatus, occurred_at: datetime) -> None:
    """Queue listing.sold / listing.expired in the same transaction as the status change."""
    payload = ListingLifecyclePayload(
        listing_id=listing.id,
        vin=listing.vin,
        status=status.value,
        asking_price=listing.asking_price,
        currency=listing.currency,
        occurred_at=occurred_at,
    )
    db.add(
        OutboxEvent(
            aggregate_type="listing",
            aggregate_id=listing.id,
            event_type=LIFECYCLE_EVENT_TYPES[status],
            payload=payload.to_json_dict(),
            status="pending",
        )
    )


async def create_listing(
    db: AsyncSession,
    *,
    vin: str,
    seller_id: str,
    location_id: str,
    asking_price: Any,
    initial_status: ListingStatus | str = ListingStatus.DRAFT,
    currency: str | None = None,
    expires_at: datetime | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Listing:
    """
    Insert a new listing. Runs inside the caller's transaction; the caller commits.

    On ConflictError the session has been rolled back.
    """
    status = parse_status(initial_status)
    if status in TERMINAL_STATUSES:
        raise ValidationError(f"A listing cannot be created as {status.value}", status=status.value)
    price = normalize_price(asking_price)
    vin = _normalize_vin(vin)
    currency = _normalize_currency(currency)
    if not seller_id or not location_id:
        raise ValidationError("seller_id and location_id are required")

    now = now or datetime.now(timezone.utc)

    async with store_errors("create_listing"):
        vehicle = await db.get(Vehicle, vin)
        if vehicle is None:
            raise ValidationError("Unknown VIN", vin=vin)

        if status is ListingStatus.ACTIVE:
            await _assert_no_other_active(db, vin)

        listing = Listing(
            vin=vin,
            seller_id=seller_id,
            location_id=location_id,
            asking_price=price,
            currency=currency,
            status=status.value,
            posted_at=now,
            expires_at=expires_at,
            notes=notes,
        )
        db.add(listing)
        await _flush_guarding_active_vin(db, vin)

    log.info("listing created id=%s vin=%s status=%s", listing.id, vin, status.value)
    return listing


async def change_status(
    db: AsyncSession,
    listing_id: str,
    new_status: ListingStatus | str,
    *,
    now: datetime | None = None,
) -> Listing:
    target = parse_status(new_status)
    now = now or datetime.now(timezone.utc)

    async with store_errors("change_status"):
        listing = await _get_for_update(db, listing_id)
        current = ListingStatus(listing.status)

        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Cannot move listing from {current.value} to {target.value}",
                listing_id=listing_id,
                from_status=current.value,
                to_status=target.value,
            )

        if target is ListingStatus.ACTIVE:
            await _assert_no_other_active(db, listing.vin, exclude_id=listing.id)

        listing.status = target.value
        if target is ListingStatus.SOLD and listing.sold_at is None:
            listing.sold_at = now

        if target in LIFECYCLE_EVENT_TYPES:
            emit_lifecycle_event(db, listing, target, now)

        await _flush_guarding_active_vin(db, listing.vin)

    log.info("listing status changed id=%s %s -> %s", listing_id, current.value, target.value)
    return listing


async def change_price(
    db: AsyncSession,
    listing_id: str,
    new_price: Any,
    *,
    now: datetime | None = None,
) -> Listing:
    price = normalize_price(new_price)
    now = now or datetime.now(timezone.utc)

    async with store_errors("change_price"):
        listing = await _get_for_update(db, listing_id)

        if not prices_differ(listing.asking_price, price):
            return listing

        old_price = listing.asking_price
        await record_change(
            db,
            listing_id=listing.id,
            old_price=old_price,
            new_price=price,
            changed_at=now,
        )
        listing.asking_price = price
        await db.flush()

    log.info("listing price changed id=%s %s -> %s", listing_id, old_price, price)
    return listing
