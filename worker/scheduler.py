"""
Long-lived alternative to celery beat: runs every job on its own cadence in one
asyncio process. Jobs never wait on each other; a crashed run is logged and the
job simply runs again on its next tick.
"""
import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_engine.core.config import settings
from market_engine.core.db import make_engine, make_session_factory
from market_engine.core.telemetry import setup_telemetry
from market_engine.services.housekeeping import cleanup_stale_drafts, expire_listings
from market_engine.services.market_stats import capture_market_snapshot
from market_engine.services.notifications import (
    dispatch_lifecycle_notifications,
    dispatch_price_drop_notifications,
    trailing_window,
)


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    name: str
    every_seconds: float
    run: Callable[[asyncio.Event], Awaitable[object]]


class PriceDropCursor:
    """
    Remembers where the last dispatched window ended, so a late tick covers every
    aligned window since then rather than only the most recent one.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.last_end: datetime | None = None

    async def __call__(self, stop: asyncio.Event):
        start, end = trailing_window(self.clock())
        if self.last_end is not None:
            if self.last_end >= end:
                return None
            start = self.last_end
        result = await dispatch_price_drop_notifications(self.session_factory, start, end, stop=stop)
        # a stopped run is redone whole next time
        if not result.stopped:
            self.last_end = end
        return result


def build_jobs(session_factory: async_sessionmaker[AsyncSession]) -> list[ScheduledJob]:
    return [
        ScheduledJob(
            "expire_listings",
            settings.expire_listings_every,
            lambda stop: expire_listings(session_factory, stop=stop),
        ),
        ScheduledJob(
            "cleanup_stale_drafts",
            settings.cleanup_drafts_every,
            lambda stop: cleanup_stale_drafts(session_factory, stop=stop),
        ),
        ScheduledJob(
            "capture_market_snapshot",
            settings.market_snapshot_every,
            lambda stop: capture_market_snapshot(session_factory),
        ),
        ScheduledJob(
            "notify_price_drops",
            settings.price_drop_notify_every,
            PriceDropCursor(session_factory),
        ),
        ScheduledJob(
            "dispatch_lifecycle_notifications",
            settings.lifecycle_notify_every,
            lambda stop: dispatch_lifecycle_notifications(session_factory, stop=stop),
        ),
    ]


async def _job_loop(job: ScheduledJob, stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    while not stop.is_set():
        # deadlines count from the start of a run, so long runs do not push the cadence back
        next_run = loop.time() + job.every_seconds
        try:
            await job.run(stop)
        except Exception:
            log.exception("%s: run crashed", job.name)
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, next_run - loop.time()))
        except asyncio.TimeoutError:
            pass


async def run_scheduled(jobs: list[ScheduledJob], stop: asyncio.Event) -> None:
    log.info("scheduler: started %d jobs", len(jobs))
    await asyncio.gather(*(_job_loop(job, stop) for job in jobs))
    log.info("scheduler: stopped")


async def main():
    logging.basicConfig(level=logging.INFO)

    engine = make_engine()
    setup_telemetry(engine)
    session_factory = make_session_factory(engine)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await run_scheduled(build_jobs(session_factory), stop)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
