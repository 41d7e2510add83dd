from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import exc as sa_exc


class LedgerError(Exception):
    retryable = False

    def __init__(self, message: str, **detail):
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(LedgerError):
    """Malformed input. Raised before anything is written."""


class ListingNotFoundError(ValidationError):
    pass


class InvalidTransitionError(LedgerError):
    pass


class ConflictError(LedgerError):
    """The single-active-listing-per-VIN invariant would be violated."""


class StoreUnavailableError(LedgerError):
    retryable = True


def _is_transient(e: BaseException) -> bool:
    if isinstance(e, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError, asyncio.TimeoutError)):
        return True
    return isinstance(e, sa_exc.DBAPIError) and bool(e.connection_invalidated)


@asynccontextmanager
async def store_errors(operation: str) -> AsyncIterator[None]:
    """
    Translate transient backing-store failures (timeouts, dropped connections)
    into StoreUnavailableError. Everything else propagates as-is.
    """
    try:
        yield
    except LedgerError:
        raise
    except Exception as e:
        if _is_transient(e):
            raise StoreUnavailableError(
                f"{operation}: store unavailable",
                error=f"{type(e).__name__}: {e}",
            ) from e
        raise
