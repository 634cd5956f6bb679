import ssl
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import event, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts/workers that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402


@dataclass(slots=True)
class _DBRuntime:
    settings: Any
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> tuple[str, bool]:
    db_url = _normalize_db_url(str(settings_obj.DATABASE_URL or ""))
    use_null_pool = bool(settings_obj.DB_USE_NULL_POOL)

    effective_url = db_url
    if settings_obj.TESTING and not db_url:
        effective_url = "sqlite+aiosqlite:///:memory:"
    elif settings_obj.TESTING and "sqlite" not in db_url and not settings_obj.ALLOW_TEST_DATABASE_URL:
        # Safety: protect tests from accidental writes to real databases.
        effective_url = "sqlite+aiosqlite:///:memory:"

    return effective_url, use_null_pool


def _build_connect_args(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    connect_args: dict[str, Any] = {}
    if "postgresql" not in effective_url:
        return connect_args

    # Required behind Supabase's transaction pooler
    connect_args["statement_cache_size"] = 0
    ssl_mode = str(settings_obj.DB_SSL_MODE).lower()

    if ssl_mode == "disable":
        logger.warning(
            "database_ssl_disabled",
            msg="SSL disabled - INSECURE, do not use in production!",
        )
        connect_args["ssl"] = False
        return connect_args

    if ssl_mode == "require":
        ssl_context = ssl.create_default_context()
        if settings_obj.DB_SSL_CA_CERT_PATH:
            ssl_context.load_verify_locations(cafile=settings_obj.DB_SSL_CA_CERT_PATH)
            ssl_context.verify_mode = ssl.CERT_REQUIRED
        else:
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            logger.warning(
                "database_ssl_require_insecure",
                msg="SSL enabled but CA verification skipped.",
            )
        connect_args["ssl"] = ssl_context
        return connect_args

    if ssl_mode in {"verify-ca", "verify-full"}:
        ca_cert = settings_obj.DB_SSL_CA_CERT_PATH
        if not ca_cert:
            raise ValueError(f"DB_SSL_CA_CERT_PATH required for ssl_mode={ssl_mode}")
        ssl_context = ssl.create_default_context(cafile=ca_cert)
        ssl_context.verify_mode = ssl.CERT_REQUIRED
        ssl_context.check_hostname = ssl_mode == "verify-full"
        connect_args["ssl"] = ssl_context
        logger.info("database_ssl_verified", mode=ssl_mode, ca_cert=ca_cert)
        return connect_args

    raise ValueError(
        f"Invalid DB_SSL_MODE: {ssl_mode}. Use: disable, require, verify-ca, verify-full"
    )


def _build_pool_config(
    settings_obj: Any, effective_url: str, use_null_pool: bool
) -> dict[str, Any]:
    is_sqlite = "sqlite" in effective_url
    pool_config: dict[str, Any] = {
        "pool_recycle": settings_obj.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
        "echo": bool(settings_obj.DB_ECHO),
    }

    if is_sqlite:
        pool_config["poolclass"] = StaticPool
    elif use_null_pool:
        pool_config["poolclass"] = NullPool
        logger.warning(
            "database_null_pool_enabled",
            msg="NullPool enabled for external DB pooler mode.",
        )
    else:
        pool_config.update(
            {
                "pool_size": int(settings_obj.DB_POOL_SIZE),
                "max_overflow": int(settings_obj.DB_MAX_OVERFLOW),
                "pool_timeout": int(settings_obj.DB_POOL_TIMEOUT),
            }
        )

    return pool_config


def _register_engine_event_listeners(engine: AsyncEngine) -> None:
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    if not settings_obj.DATABASE_URL and not settings_obj.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    effective_url, use_null_pool = _resolve_effective_url(settings_obj)
    connect_args = _build_connect_args(settings_obj, effective_url)
    pool_config = _build_pool_config(settings_obj, effective_url, use_null_pool)
    engine = create_async_engine(
        effective_url,
        **pool_config,
        connect_args=connect_args,
    )
    _register_engine_event_listeners(engine)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        settings=settings_obj,
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def reset_db_runtime() -> None:
    """Test helper for forcing runtime re-initialization on next access."""
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None

    if runtime is None:
        return

    try:
        # Sync disposal so reset can be called from non-async test fixtures.
        runtime.engine.sync_engine.dispose()
    except Exception as exc:
        logger.debug("db_runtime_dispose_skipped", error=str(exc), exc_info=True)


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


async def dispose_engine_pool() -> None:
    """
    Drop every pooled connection so the next checkout reconnects.
    Used after connection-class failures (pooler restarts, failovers).
    """
    runtime = _db_runtime
    if runtime is None:
        return
    await runtime.engine.dispose()
    logger.warning("database_pool_disposed")


def _get_slow_query_threshold_seconds() -> float:
    threshold = float(get_settings().DB_SLOW_QUERY_THRESHOLD_SECONDS)
    return threshold if threshold > 0 else 0.2


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    starts = conn.info.get("query_start_time")
    if not starts:
        return
    total = time.perf_counter() - starts.pop(-1)
    threshold = _get_slow_query_threshold_seconds()
    if total > threshold:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=threshold,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
            parameters=str(parameters)[:100] if parameters else None,
        )


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
