"""SessionGuard Database Configuration - Async SQLAlchemy."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from sessionguard.core.config import settings

# Connection pool settings are configurable via environment variables:
# - DB_POOL_SIZE: Number of connections to keep in the pool (default: 20)
# - DB_MAX_OVERFLOW: Additional connections allowed beyond pool_size during high load (default: 20)
# - DB_POOL_TIMEOUT: Seconds to wait before giving up on getting a connection (default: 30)
# - DB_POOL_RECYCLE: Recycle connections after this many seconds (default: 1800 = 30 min)


def _enable_sqlite_write_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite's implicit BEGIN is deferred, so two connections can both read a
    refresh token as unrevoked before either writes. BEGIN IMMEDIATE
    serializes transactions so conditional updates see committed state.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Disable the driver's own transaction handling; "begin" below emits it
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with backend-appropriate pool settings."""
    if database_url.startswith("sqlite"):
        sqlite_engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": settings.sqlite_busy_timeout},
            echo=echo,
        )
        _enable_sqlite_write_transactions(sqlite_engine)
        return sqlite_engine

    return create_async_engine(
        database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,  # Verify connection before use
        echo=echo,
    )


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Only echo SQL when debug is explicitly enabled
engine = create_engine_for_url(
    settings.database_url,
    echo=settings.debug and settings.log_level == "DEBUG",
)

# Session factory
async_session_maker = create_session_maker(engine)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except (Exception, BaseException):
            # Catch both regular exceptions and BaseExceptions (e.g., asyncio.CancelledError)
            # to ensure rollback happens even on cancellation
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_db_connection() -> bool:
    """Check if database is reachable."""
    from sessionguard.core.logging import get_logger

    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError) as e:
        # Expected network/connection errors
        get_logger("database").debug(f"Database connection check failed: {e}")
        return False
    except Exception as e:
        get_logger("database").warning(f"Unexpected error checking database connection: {e}")
        return False
