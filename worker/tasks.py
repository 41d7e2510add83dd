import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timezone

from celery.signals import worker_process_init

from market_engine.core.db import make_engine, make_session_factory
from market_engine.core.telemetry import setup_telemetry
from market_engine.services.errors import StoreUnavailableError
from market_engine.services.housekeeping import cleanup_stale_drafts, expire_listings
from market_engine.services.market_stats import capture_market_snapshot
from market_engine.services.notifications import (
    dispatch_lifecycle_notifications,
    dispatch_price_drop_notifications,
    trailing_window,
)
from market_engine.services.retry import compute_backoff_seconds
from worker.celery_app import celery


log = logging.getLogger(__name__)

# NullPool: each task runs in a fresh event loop via asyncio.run
engine = make_engine(pooled=False)
SessionLocal = make_session_factory(engine)


@worker_process_init.connect
def _init_worker_process(**_kwargs) -> None:
    setup_telemetry(engine)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _retry_later(task, exc: StoreUnavailableError, kwargs: dict | None = None):
    countdown = compute_backoff_seconds(task.request.retries + 1, base=30, cap=900)
    log.warning("%s: store unavailable, task retry in %.0fs", task.name, countdown)
    return task.retry(exc=exc, countdown=countdown, kwargs=kwargs)


@celery.task(name="worker.tasks.expire_listings", bind=True, max_retries=5)
def expire_listings_task(self) -> dict:
    try:
        return asdict(asyncio.run(expire_listings(SessionLocal)))
    except StoreUnavailableError as e:
        raise _retry_later(self, e)


@celery.task(name="worker.tasks.cleanup_stale_drafts", bind=True, max_retries=5)
def cleanup_stale_drafts_task(self) -> dict:
    try:
        return asdict(asyncio.run(cleanup_stale_drafts(SessionLocal)))
    except StoreUnavailableError as e:
        raise _retry_later(self, e)


@celery.task(name="worker.tasks.capture_market_snapshot", bind=True, max_retries=5)
def capture_market_snapshot_task(self) -> dict:
    try:
        snapshot = asyncio.run(capture_market_snapshot(SessionLocal))
    except StoreUnavailableError as e:
        raise _retry_later(self, e)
    return {"snapshot_id": snapshot.id, "active_listings": snapshot.active_listings}


@celery.task(name="worker.tasks.notify_price_drops", bind=True, max_retries=5)
def notify_price_drops_task(self, window_start: str | None = None, window_end: str | None = None) -> dict:
    # the window is fixed on the first attempt and travels with every retry
    if window_start is None or window_end is None:
        start, end = trailing_window(_utcnow())
    else:
        start, end = datetime.fromisoformat(window_start), datetime.fromisoformat(window_end)
    try:
        result = asyncio.run(dispatch_price_drop_notifications(SessionLocal, start, end))
    except StoreUnavailableError as e:
        raise _retry_later(self, e, {"window_start": start.isoformat(), "window_end": end.isoformat()})
    return {**asdict(result), "window_start": start.isoformat(), "window_end": end.isoformat()}


@celery.task(name="worker.tasks.dispatch_lifecycle_notifications", bind=True, max_retries=5)
def dispatch_lifecycle_notifications_task(self) -> dict:
    try:
        return asdict(asyncio.run(dispatch_lifecycle_notifications(SessionLocal)))
    except StoreUnavailableError as e:
        raise _retry_later(self, e)
