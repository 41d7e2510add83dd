from celery import Celery
from celery.schedules import crontab

from market_engine.core.config import settings


celery = Celery(
    "listing-engine-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    timezone="UTC",
    enable_utc=True,
    task_routes={
        "worker.tasks.expire_listings": {"queue": "housekeeping"},
        "worker.tasks.cleanup_stale_drafts": {"queue": "housekeeping"},
        "worker.tasks.capture_market_snapshot": {"queue": "market"},
        "worker.tasks.notify_price_drops": {"queue": "notifications"},
        "worker.tasks.dispatch_lifecycle_notifications": {"queue": "notifications"},
    },
    # cadences are policy; every job is safe to run late, early or twice
    beat_schedule={
        "expire-listings": {
            "task": "worker.tasks.expire_listings",
            "schedule": settings.expire_listings_every,
        },
        "cleanup-stale-drafts": {
            "task": "worker.tasks.cleanup_stale_drafts",
            "schedule": settings.cleanup_drafts_every,
        },
        "capture-market-snapshot": {
            "task": "worker.tasks.capture_market_snapshot",
            "schedule": settings.market_snapshot_every,
        },
        "notify-price-drops": {
            "task": "worker.tasks.notify_price_drops",
            # fires just after each aligned window closes, so no window is skipped
            "schedule": crontab(minute=5, hour=f"*/{settings.price_drop_window_hours}"),
        },
        "dispatch-lifecycle-notifications": {
            "task": "worker.tasks.dispatch_lifecycle_notifications",
            "schedule": settings.lifecycle_notify_every,
        },
    },
)
