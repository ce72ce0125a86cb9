"""
Database layer — async PostgreSQL via SQLAlchemy 2.0 + asyncpg.

Provides:
    • Lazily created async engine and session factory
    • Base model for ORM entities
    • Retry / transaction primitives shared by every store operation

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    Error class                          Retried?   Surfaces as
    ──────────────────────────────────   ────────   ─────────────────────
    connection drop / pool timeout       yes        StoreUnavailableError
    asyncio / socket timeout             yes        (after DB_MAX_RETRIES)
    integrity / data / programming error no         StoreError
    anything else                        no         original exception

Backoff formula (exponential):
    delay = DB_RETRY_DELAY_SECONDS × 2^(attempt - 1)

Usage:
    from backend.alerting.core.database import with_retry, with_transaction

    alert = await with_retry(lambda: store.get_alert(alert_id), "Get alert")
    await with_transaction(store, _create, "Create alert")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.alerting.core.config import settings
from backend.alerting.core.errors import StoreError, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine (created on first use) ──
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine for settings.DATABASE_URL."""
    global _engine
    if _engine is None:
        kwargs: dict = {"echo": settings.DATABASE_ECHO, "future": True}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
            kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_factory


# ── Lifecycle ──
async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # registers the alert tables on Base.metadata
    from backend.alerting.alerts import sql_store  # noqa: F401

    async with (engine or get_engine()).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db() -> None:
    """Dispose engine connections."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connections closed")


# ═══════════════════════════════════════════════════════════════════════════
# Retry Primitives
# ═══════════════════════════════════════════════════════════════════════════

_NON_RETRYABLE = (
    sa_exc.IntegrityError,
    sa_exc.DataError,
    sa_exc.ProgrammingError,
    sa_exc.NotSupportedError,
)


def is_transient_error(exc: BaseException) -> bool:
    """True for connection/timeout class errors worth retrying."""
    if isinstance(exc, _NON_RETRYABLE):
        return False
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(
        exc,
        (
            sa_exc.OperationalError,
            sa_exc.DisconnectionError,
            sa_exc.TimeoutError,
            ConnectionError,
            asyncio.TimeoutError,
            TimeoutError,
        ),
    )


def is_non_retryable_error(exc: BaseException) -> bool:
    """True for constraint-violation class errors that must surface at once."""
    return isinstance(exc, _NON_RETRYABLE)


def _compute_backoff(base_delay: float, attempt: int) -> float:
    return base_delay * (2 ** (attempt - 1))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str = "Database operation",
    *,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
) -> T:
    """
    Run an async store operation, retrying transient failures.

    Parameters
    ----------
    operation : callable
        Zero-argument coroutine factory. Called once per attempt.
    label : str
        Human-readable operation name for logs and errors.
    max_retries : int, optional
        Total attempts (default ``settings.DB_MAX_RETRIES``).
    base_delay : float, optional
        Backoff base in seconds (default ``settings.DB_RETRY_DELAY_SECONDS``).

    Returns
    -------
    The operation's result.

    Raises
    ------
    StoreError
        Immediately, on a non-retryable store error.
    StoreUnavailableError
        When every attempt failed with a transient error.
    """
    attempts = max_retries if max_retries is not None else settings.DB_MAX_RETRIES
    delay_base = base_delay if base_delay is not None else settings.DB_RETRY_DELAY_SECONDS
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except StoreError:
            # already classified (and retried) by an inner call
            raise
        except Exception as exc:
            if is_non_retryable_error(exc):
                logger.error("%s failed (not retryable): %s", label, exc)
                raise StoreError(label, str(exc)) from exc
            if not is_transient_error(exc):
                raise
            last_error = exc

        logger.warning(
            "%s attempt %d/%d failed: %s", label, attempt, attempts, last_error,
        )
        if attempt < attempts:
            delay = _compute_backoff(delay_base, attempt)
            if delay > 0:
                logger.info("Retrying %s in %.1fs", label, delay)
                await asyncio.sleep(delay)

    raise StoreUnavailableError(label, attempts, str(last_error)) from last_error


async def with_transaction(
    store: Any,
    operation: Callable[[Any], Awaitable[T]],
    label: str = "Database transaction",
    **retry_kwargs: Any,
) -> T:
    """
    Run ``operation(tx)`` inside ``store.transaction()`` with retries.

    The whole transaction is retried on a transient failure; a failure
    inside ``operation`` rolls back every write it made.
    """
    async def _run() -> T:
        async with store.transaction() as tx:
            return await asyncio.wait_for(
                operation(tx), timeout=settings.DB_TRANSACTION_TIMEOUT_SECONDS,
            )

    return await with_retry(_run, label, **retry_kwargs)
