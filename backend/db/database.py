"""
Database configuration and session management.

SQLite is used for development and tests, PostgreSQL (asyncpg) in production.
The refresh-token registry and lockout counters rely on
``UPDATE ... RETURNING`` / ``DELETE ... RETURNING``, supported by PostgreSQL
and by SQLite 3.35+.

SQLite notes:
- Foreign keys are only enforced with ``PRAGMA foreign_keys=ON`` (set per connection below).
- DateTime(timezone=True) columns come back naive; callers normalize to UTC.
"""

import logging

from config import get_settings
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)
settings = get_settings()

# Convert URL for async drivers
database_url = settings.DATABASE_URL
if database_url.startswith("postgresql://"):
    database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

is_sqlite = database_url.startswith("sqlite")

engine_kwargs: dict = {
    "echo": False,
}

if not is_sqlite:
    # pool_pre_ping avoids stale connections after a DB restart.
    # Total max connections = pool_size + max_overflow.
    engine_kwargs["pool_pre_ping"] = True
    engine_kwargs["pool_size"] = 5
    engine_kwargs["max_overflow"] = 10

engine = create_async_engine(database_url, **engine_kwargs)


def enable_sqlite_foreign_keys(async_engine) -> None:
    """Turn on FK enforcement for every new SQLite connection of ``async_engine``."""

    @event.listens_for(async_engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if is_sqlite:
    enable_sqlite_foreign_keys(engine)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


class Base(DeclarativeBase):
    pass


async def get_db():
    """
    Dependency that yields a database session.

    Routes call db.commit() explicitly. Security bookkeeping (lockout
    counters, reuse revocation) is committed even when the request itself
    is rejected, so commit placement stays in the route's hands.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db():
    """Create tables for every registered model."""
    # Import models so they register with Base.metadata
    from models import auth_audit, refresh_token, song, user  # noqa: F401

    async with engine.begin() as conn:
        # For PostgreSQL: advisory lock so concurrent workers don't race on DDL
        if not is_sqlite:
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
