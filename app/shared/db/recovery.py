"""
Database Error Recovery

Classifies database failures as transient or permanent and re-runs
transient ones with the `database` retry policy. Connection-class failures
also drop the engine pool so the next attempt reconnects instead of reusing
a dead socket.
"""

import time
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import structlog
from sqlalchemy import delete, insert, text, update
from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Executable

from app.shared.core.retry import RETRY_CONFIGS, RetryManager
from app.shared.db.session import async_session_maker, dispose_engine_pool

logger = structlog.get_logger()
T = TypeVar("T")

# PostgREST and Postgres SQLSTATE codes that indicate a transient condition
RETRYABLE_DB_CODES = frozenset(
    {
        "PGRST301",  # connection error
        "PGRST302",  # timeout
        "PGRST116",  # no rows (replica lag)
        "08000",  # connection_exception
        "08003",  # connection_does_not_exist
        "08006",  # connection_failure
        "53300",  # too_many_connections
        "57P01",  # admin_shutdown
        "57P02",  # crash_shutdown
        "57P03",  # cannot_connect_now
    }
)

RETRYABLE_DB_KEYWORDS = (
    "connection",
    "timeout",
    "network",
    "unavailable",
    "temporary",
    "retry",
)

_CONNECTION_ERROR_TYPES = (OperationalError, DisconnectionError, InterfaceError)
_CONNECTION_CODES = frozenset({"08000", "08003", "08006", "57P01", "57P02", "57P03", "PGRST301"})


def _error_codes(exc: BaseException) -> set[str]:
    codes: set[str] = set()
    for source in (exc, getattr(exc, "orig", None)):
        if source is None:
            continue
        for attr in ("pgcode", "sqlstate", "code"):
            value = getattr(source, attr, None)
            if isinstance(value, str) and value:
                codes.add(value.upper())
    return codes


def is_retryable_db_error(exc: BaseException) -> bool:
    """True for transient database failures worth re-attempting."""
    if isinstance(exc, _CONNECTION_ERROR_TYPES):
        return True
    if _error_codes(exc) & RETRYABLE_DB_CODES:
        return True
    message = str(exc).lower()
    return any(keyword in message for keyword in RETRYABLE_DB_KEYWORDS)


def _is_connection_error(exc: BaseException) -> bool:
    if isinstance(exc, _CONNECTION_ERROR_TYPES):
        return True
    if _error_codes(exc) & _CONNECTION_CODES:
        return True
    return "connection" in str(exc).lower()


def _db_retry_manager() -> RetryManager:
    config = dict(RETRY_CONFIGS["database"])
    config["retry_if"] = is_retryable_db_error
    return RetryManager("database", config=config)


async def with_db_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    operation_name: str = "db_operation",
    **kwargs: Any,
) -> T:
    """Run `operation(*args, **kwargs)` under the database retry policy."""
    structlog.contextvars.bind_contextvars(db_operation=operation_name)
    try:
        return await _db_retry_manager().execute_with_retry(operation, *args, **kwargs)
    except Exception as e:
        logger.error(
            "db_operation_failed",
            operation_name=operation_name,
            retryable=is_retryable_db_error(e),
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        structlog.contextvars.unbind_contextvars("db_operation")


async def with_connection_recovery(
    operation: Callable[[AsyncSession], Awaitable[T]],
    operation_name: str = "db_operation",
) -> T:
    """
    Run `operation(session)` with a fresh session per attempt.

    After a connection-class failure the engine pool is disposed before the
    error is handed back to the retry loop.
    """

    async def _attempt() -> T:
        async with async_session_maker() as session:
            try:
                return await operation(session)
            except Exception as e:
                await session.rollback()
                if _is_connection_error(e):
                    logger.warning(
                        "db_connection_lost_disposing_pool",
                        operation_name=operation_name,
                        error=str(e),
                    )
                    await dispose_engine_pool()
                raise

    return await with_db_retry(_attempt, operation_name=operation_name)


async def execute_with_recovery(
    db: AsyncSession,
    statement: Executable,
    params: Optional[dict[str, Any]] = None,
    operation_name: str = "execute",
) -> Any:
    """Execute a statement on `db`, rolling back and retrying transient failures."""

    async def _execute() -> Any:
        try:
            if params:
                return await db.execute(statement, params)
            return await db.execute(statement)
        except Exception:
            await db.rollback()
            raise

    return await with_db_retry(_execute, operation_name=operation_name)


async def query_with_recovery(
    db: AsyncSession,
    statement: Executable,
    params: Optional[dict[str, Any]] = None,
) -> Sequence[Any]:
    result = await execute_with_recovery(db, statement, params, operation_name="query")
    return result.scalars().all()


async def insert_with_recovery(db: AsyncSession, model: Any, values: dict[str, Any]) -> int:
    result = await execute_with_recovery(
        db, insert(model).values(**values), operation_name="insert"
    )
    await db.commit()
    return int(result.rowcount or 0)


async def update_with_recovery(
    db: AsyncSession, model: Any, values: dict[str, Any], *where: Any
) -> int:
    result = await execute_with_recovery(
        db, update(model).where(*where).values(**values), operation_name="update"
    )
    await db.commit()
    return int(result.rowcount or 0)


async def delete_with_recovery(db: AsyncSession, model: Any, *where: Any) -> int:
    result = await execute_with_recovery(
        db, delete(model).where(*where), operation_name="delete"
    )
    await db.commit()
    return int(result.rowcount or 0)


async def check_database_health(db: AsyncSession) -> dict[str, Any]:
    """Round-trip a trivial query and report latency."""
    start = time.perf_counter()
    try:
        await db.execute(text("SELECT 1"))
        return {
            "healthy": True,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "error": None,
        }
    except Exception as e:
        logger.error("database_health_check_failed", error=str(e))
        return {
            "healthy": False,
            "latency_ms": round((time.perf_counter() - start) * 1000, 2),
            "error": str(e),
        }
