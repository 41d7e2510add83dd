from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from opentelemetry import trace
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from market_engine.core.config import settings
from market_engine.services.errors import StoreUnavailableError, store_errors
from market_engine.services.retry import compute_backoff_seconds


log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class JobRunResult:
    job: str
    batches: int = 0
    rows: int = 0
    retries: int = 0
    stopped: bool = False
    elapsed_ms: int = 0


class BatchJob:
    """
    One unit of a scheduled sweep. run_batch handles at most `limit` rows inside
    the given session and returns how many it handled; the runner commits.
    A batch that handles fewer than `limit` rows ends the run.
    """
    name = "batch_job"

    async def run_batch(self, db: AsyncSession, limit: int) -> int:
        raise NotImplementedError

    def batch_committed(self) -> None:
        # hook for jobs that keep a cursor; called only after a successful commit
        pass


class Timer:
    def __enter__(self):
        self._t0 = time.perf_counter()
        self.ms = 0
        return self
    def __exit__(self, exc_type, exc, tb):
        self.ms = int((time.perf_counter() - self._t0) * 1000)


async def _in_transaction_with_retry(
    session_factory: async_sessionmaker[AsyncSession],
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    job: str,
    result: JobRunResult,
    max_retries: int,
    backoff_base: float,
    sleep: Sleep,
) -> T:
    attempt = 0
    while True:
        try:
            async with session_factory() as db:
                async with store_errors(job):
                    value = await fn(db)
                    await db.commit()
            return value
        except StoreUnavailableError as e:
            # the failed batch rolled back when the session closed; redo the same batch
            attempt += 1
            if attempt > max_retries:
                log.error("%s: giving up after %d retries: %s", job, max_retries, e.detail.get("error"))
                raise
            result.retries += 1
            delay = compute_backoff_seconds(attempt, base=backoff_base)
            log.warning("%s: store unavailable, retrying batch in %.1fs (attempt %d)", job, delay, attempt)
            await sleep(delay)


async def run_in_batches(
    session_factory: async_sessionmaker[AsyncSession],
    batch_job: BatchJob,
    *,
    batch_size: int | None = None,
    max_batch_retries: int | None = None,
    stop: asyncio.Event | None = None,
    backoff_base: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> JobRunResult:
    """
    Drive a BatchJob until it runs dry. Every batch is its own transaction, so a
    failure (or cancellation) never undoes earlier batches and never leaves a
    half-applied batch behind. Setting `stop` ends the run between batches.
    """
    batch_size = batch_size or settings.job_batch_size
    max_retries = settings.job_max_batch_retries if max_batch_retries is None else max_batch_retries
    result = JobRunResult(job=batch_job.name)

    with tracer.start_as_current_span(f"job.{batch_job.name}") as span, Timer() as t:
        while True:
            if stop is not None and stop.is_set():
                result.stopped = True
                log.info("%s: stop requested after %d batches", batch_job.name, result.batches)
                break

            handled = await _in_transaction_with_retry(
                session_factory,
                lambda db: batch_job.run_batch(db, batch_size),
                job=batch_job.name,
                result=result,
                max_retries=max_retries,
                backoff_base=backoff_base,
                sleep=sleep,
            )
            batch_job.batch_committed()

            result.batches += 1
            result.rows += handled
            if handled < batch_size:
                break

        span.set_attribute("job.batches", result.batches)
        span.set_attribute("job.rows", result.rows)
        span.set_attribute("job.retries", result.retries)

    result.elapsed_ms = t.ms
    log.info("%s: done batches=%d rows=%d retries=%d", batch_job.name, result.batches, result.rows, result.retries)
    return result


async def run_once(
    session_factory: async_sessionmaker[AsyncSession],
    fn: Callable[[AsyncSession], Awaitable[T]],
    *,
    job: str,
    max_retries: int | None = None,
    backoff_base: float = 1.0,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Single-transaction job with the same retry policy as a batch."""
    max_retries = settings.job_max_batch_retries if max_retries is None else max_retries
    result = JobRunResult(job=job)
    with tracer.start_as_current_span(f"job.{job}"):
        return await _in_transaction_with_retry(
            session_factory,
            fn,
            job=job,
            result=result,
            max_retries=max_retries,
            backoff_base=backoff_base,
            sleep=sleep,
        )
