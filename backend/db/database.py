"""
Database configuration and session management.

SQLite (development, tests) and PostgreSQL (production) are both supported.
The refresh-token rotation relies on ``UPDATE ... RETURNING`` which both
backends implement (SQLite since 3.35).

SQLite does not enforce foreign keys by default; the connect hook below
turns them on so deleting a user cascades to its refresh tokens.
"""

import logging

from config import get_settings
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

settings = get_settings()


def normalize_database_url(url: str) -> str:
    """Convert plain driver URLs to their async variants."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
    return url


def build_engine(url: str, **overrides) -> AsyncEngine:
    """
    Create an async engine with backend-specific settings.

    pool_pre_ping / pool_size / max_overflow only apply to PostgreSQL;
    SQLite connections are cheap and not pooled the same way.
    """
    url = normalize_database_url(url)
    engine_kwargs: dict = {"echo": False}

    if url.startswith("sqlite"):
        # Concurrent writers wait for the lock instead of failing immediately
        engine_kwargs["connect_args"] = {"timeout": 15}
    else:
        engine_kwargs["pool_pre_ping"] = True
        engine_kwargs["pool_size"] = 5
        engine_kwargs["max_overflow"] = 10

    engine_kwargs.update(overrides)
    new_engine = create_async_engine(url, **engine_kwargs)

    if url.startswith("sqlite"):

        @event.listens_for(new_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


database_url = normalize_database_url(settings.DATABASE_URL)

engine = build_engine(database_url)
AsyncSessionLocal = build_sessionmaker(engine)


class Base(DeclarativeBase):
    pass


async def get_db():
    """
    Dependency that yields a database session.

    Routes and services call ``db.commit()`` explicitly; the rollback on
    exception is a safety net for anything left uncommitted.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine = None):
    """Create all tables if they don't exist yet."""
    # Import models so they register on Base.metadata
    from models import auth_audit, refresh_token, user  # noqa: F401

    bind = bind or engine
    async with bind.begin() as conn:
        # For PostgreSQL: advisory lock so simultaneous workers don't race create_all
        if bind.dialect.name == "postgresql":
            await conn.execute(text("SELECT pg_advisory_xact_lock(1)"))
            logger.info("Acquired database migration lock")

        await conn.run_sync(Base.metadata.create_all, checkfirst=True)

    logger.info("Database initialized successfully")
