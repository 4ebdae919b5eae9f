"""
TradeLedger Database Connection Management
SQLAlchemy 2.0 async database engine, session management and the atomic scope.
"""

import asyncio
import logging
import re
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy import UniqueConstraint, event, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from ..config.settings import settings
from ..errors import (
    CONSTRAINT_CONFLICTS,
    ConflictError,
    IntegrityViolationError,
    TradeLedgerError,
    TransientError,
)

# Configure logging
logger = logging.getLogger(__name__)

# Base class for all models
Base = declarative_base()

# Global engine and session factory (initialized on first use)
_engine: Optional[AsyncEngine] = None
_async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

T = TypeVar("T")


# ============================================================================
# Engine and sessions
# ============================================================================

def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for ``url``.

    SQLite connections run in autocommit at the driver level and every
    SQLAlchemy transaction is opened with ``BEGIN IMMEDIATE``, so writers
    serialise the way row locks serialise them on PostgreSQL.
    """
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": 30},
        )

        @event.listens_for(engine.sync_engine, "connect")
        def on_sqlite_connect(dbapi_conn, connection_record):
            dbapi_conn.isolation_level = None
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def on_sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    engine = create_async_engine(
        url,
        echo=echo,
        pool_size=settings.database.pool_size,
        max_overflow=settings.database.max_overflow,
        pool_timeout=settings.database.pool_timeout,
        pool_recycle=settings.database.pool_recycle,
        pool_pre_ping=True,  # Verify connections before using
    )

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("New database connection established")

    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session maker with explicit flush and commit control."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent expired object errors
        autoflush=False,         # Manual flush control
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine

    if _engine is None:
        _engine = build_engine(settings.database.async_url, echo=settings.database.echo)
        logger.info("Database engine initialized")

    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """
    Get or create the async session maker.

    Also used as a FastAPI dependency; tests override it.

    Returns:
        async_sessionmaker: The session maker configured with the engine.
    """
    global _async_session_maker

    if _async_session_maker is None:
        _async_session_maker = build_session_maker(get_engine())
        logger.info("Session maker initialized")

    return _async_session_maker


async def init_database(engine: Optional[AsyncEngine] = None) -> None:
    """
    Initialize the database by creating all tables.

    This should be called during application startup.
    """
    engine = engine or get_engine()

    try:
        # Import all models to ensure they're registered with Base
        from . import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_database() -> None:
    """
    Close the database engine and cleanup resources.

    This should be called during application shutdown.
    """
    global _engine, _async_session_maker

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_maker = None
        logger.info("Database engine disposed")


async def check_database_health(engine: Optional[AsyncEngine] = None) -> dict:
    """
    Check database connectivity and return health status.

    Returns:
        dict: Health check results with status and details.
    """
    try:
        engine = engine or get_engine()
        async with engine.connect() as conn:
            start_time = time.perf_counter()
            result = await conn.execute(text("SELECT 1"))
            result.scalar()
            latency_ms = (time.perf_counter() - start_time) * 1000

            return {
                "status": "healthy",
                "connected": True,
                "latency_ms": round(latency_ms, 2),
            }
    except (DBAPIError, PoolTimeoutError, OSError) as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "connected": False,
            "error": str(e),
        }


# ============================================================================
# Store error translation
# ============================================================================

# duplicate key value violates unique constraint "platforms_user_name_active_unique"
_PG_CONSTRAINT_RE = re.compile(r'constraint "([^"]+)"')
# UNIQUE constraint failed: platforms.user_id, platforms.name
_SQLITE_UNIQUE_RE = re.compile(r"UNIQUE constraint failed: (.+)$", re.MULTILINE)
# CHECK constraint failed: ck_sub_accounts_balance_non_negative
_SQLITE_CHECK_RE = re.compile(r"CHECK constraint failed: (\w+)")

# SQLSTATEs worth a retry: serialization failure, deadlock, lock not available
_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}


def _unique_index_names() -> Dict[Tuple[str, Tuple[str, ...]], str]:
    """(table, columns) -> unique index/constraint name, from the model metadata."""
    names: Dict[Tuple[str, Tuple[str, ...]], str] = {}
    for table in Base.metadata.tables.values():
        for index in table.indexes:
            if index.unique and index.name:
                names[(table.name, tuple(c.name for c in index.columns))] = index.name
        for constraint in table.constraints:
            if isinstance(constraint, UniqueConstraint) and constraint.name:
                names[(table.name, tuple(c.name for c in constraint.columns))] = constraint.name
    return names


def _sqlite_constraint_name(column_list: str) -> Optional[str]:
    qualified = [part.strip() for part in column_list.split(",")]
    tables = {part.split(".", 1)[0] for part in qualified}
    if len(tables) != 1:
        return None
    columns = tuple(part.split(".", 1)[1] for part in qualified if "." in part)
    return _unique_index_names().get((tables.pop(), columns))


def constraint_name(exc: DBAPIError) -> Optional[str]:
    """Best-effort extraction of the violated constraint's name."""
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if name:
            return name

    message = str(orig) if orig is not None else str(exc)
    match = _PG_CONSTRAINT_RE.search(message)
    if match:
        return match.group(1)
    match = _SQLITE_UNIQUE_RE.search(message)
    if match:
        return _sqlite_constraint_name(match.group(1))
    match = _SQLITE_CHECK_RE.search(message)
    if match:
        return match.group(1)
    return None


def _sqlstate(exc: DBAPIError) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for candidate in (orig, getattr(orig, "__cause__", None)):
        state = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if state:
            return state
    return None


def translate_db_error(exc: Exception) -> TradeLedgerError:
    """
    Map a store exception onto the domain error hierarchy.

    Unique violations are classified through ``CONSTRAINT_CONFLICTS``; other
    integrity failures (foreign keys, checks) become integrity violations.
    """
    if isinstance(exc, PoolTimeoutError):
        return TransientError("database connection pool exhausted")

    if isinstance(exc, IntegrityError):
        name = constraint_name(exc)
        if name in CONSTRAINT_CONFLICTS:
            return ConflictError(CONSTRAINT_CONFLICTS[name])
        message = str(getattr(exc, "orig", exc)).lower()
        if "foreign key" in message:
            return IntegrityViolationError("operation blocked by a dependent record", relation=name)
        return IntegrityViolationError("integrity constraint violated", relation=name)

    if isinstance(exc, DBAPIError):
        if (
            isinstance(exc, OperationalError)
            or exc.connection_invalidated
            or _sqlstate(exc) in _TRANSIENT_SQLSTATES
        ):
            return TransientError("database temporarily unavailable")

    logger.error(f"Unclassified database error: {exc.__class__.__name__}")
    return TradeLedgerError("internal database error")


# ============================================================================
# Atomic scope
# ============================================================================

class DatabaseTransaction:
    """
    Atomic scope: one session, one database transaction.

    Commits on clean exit and rolls back on any exception, including
    cancellation. Store errors leave the scope translated into domain errors.

    Example:
        async with DatabaseTransaction(session_maker) as tx:
            tx.session.add(entity)
    """

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "DatabaseTransaction":
        session_maker = self._session_maker or get_session_maker()
        self.session = session_maker()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if not self.session:
            return False

        try:
            if exc_type is None:
                try:
                    await self.session.commit()
                except (DBAPIError, PoolTimeoutError) as e:
                    await self.session.rollback()
                    raise translate_db_error(e) from e
            else:
                await self.session.rollback()
                if isinstance(exc_val, (DBAPIError, PoolTimeoutError)):
                    raise translate_db_error(exc_val) from exc_val
        finally:
            await self.session.close()
        return False


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    max_retries: Optional[int] = None,
    base_delay: float = 0.05,
) -> T:
    """
    Run ``operation`` again on TransientError, at most ``max_retries`` times.

    Only for operations that are safe to repeat.
    """
    retries = settings.database.max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientError:
            if attempt >= retries:
                raise
            attempt += 1
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(f"Transient database error, retry {attempt}/{retries} in {delay:.2f}s")
            await asyncio.sleep(delay)


# Convenience exports
__all__ = [
    "Base",
    "build_engine",
    "build_session_maker",
    "get_engine",
    "get_session_maker",
    "init_database",
    "close_database",
    "check_database_health",
    "constraint_name",
    "translate_db_error",
    "DatabaseTransaction",
    "retry_transient",
]
