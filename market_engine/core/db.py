from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from market_engine.core.config import settings


def make_engine(url: str | None = None, *, pooled: bool = True) -> AsyncEngine:
    """
    Build the async engine for the ledger store.

    pooled=False is meant for Celery workers: every task runs its own event loop
    via asyncio.run, so connections must not outlive a single run.
    """
    url = url or settings.database_url
    kwargs: dict = {"pool_pre_ping": True}
    if pooled:
        kwargs["pool_timeout"] = settings.store_timeout_seconds
    else:
        kwargs["poolclass"] = NullPool

    if url.startswith("postgresql+asyncpg"):
        # asyncpg cancels statements running past this and bounds connect time
        kwargs["connect_args"] = {
            "command_timeout": settings.store_timeout_seconds,
            "timeout": settings.store_timeout_seconds,
        }
    return create_async_engine(url, **kwargs)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
