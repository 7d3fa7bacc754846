# 📂 backend/hostbill/database.py — DB connection, pool, sessions, table creation
# -----------------------------------------------------------------------------
# This module is responsible for:
#   • Building the async SQLAlchemy engine (PostgreSQL via asyncpg; SQLite via
#     aiosqlite in tests).
#   • Pool configuration (pool_size, max_overflow, pre_ping).
#   • Session factory and FastAPI dependencies:
#       - get_session()     - Depends for routes.
#       - session_scope()   - transaction context manager for jobs/scripts.
#   • Startup utilities: create_tables, health-check.
#   • Startup/Shutdown hooks: on_startup_init_db(), on_shutdown_dispose().
#
# Relations:
#   • config.py - DATABASE_URL, pool sizes, DEBUG, DB_CREATE_ALL.
#   • models.py - declarative models (Base.metadata).
#   • main.py - calls on_startup_init_db() / on_shutdown_dispose().
#   • scheduler.py - session_scope() per job.
# -----------------------------------------------------------------------------

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import get_settings, normalize_database_url
from .utils import get_logger

log = get_logger("db")

# -----------------------------------------------------------------------------
# Global singletons (created once per process/worker)
# -----------------------------------------------------------------------------
_engine: Optional[AsyncEngine] = None
_SessionFactory: Optional[async_sessionmaker] = None


def _build_database_url() -> str:
    """
    Returns the async SQLAlchemy URL.
      1) DATABASE_URL from settings, else DATABASE_URL_LOCAL.
      2) postgres:// and postgresql:// are coerced to postgresql+asyncpg://.
    """
    s = get_settings()
    url = s.DATABASE_URL or s.DATABASE_URL_LOCAL
    if not url:
        raise RuntimeError(
            "DATABASE_URL is empty and DATABASE_URL_LOCAL is not provided in settings."
        )
    return normalize_database_url(url)


def get_engine() -> AsyncEngine:
    """
    Lazy AsyncEngine + session factory initialisation.
    SQLite (tests, local demos) gets a single shared connection so that an
    in-memory database survives across sessions.
    """
    global _engine, _SessionFactory

    if _engine is not None:
        return _engine

    s = get_settings()
    db_url = _build_database_url()

    if db_url.startswith("sqlite"):
        _engine = create_async_engine(
            db_url,
            echo=s.DEBUG,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        _engine = create_async_engine(
            db_url,
            echo=s.DEBUG,
            pool_pre_ping=True,
            pool_size=s.DB_POOL_SIZE,
            max_overflow=s.DB_MAX_OVERFLOW,
        )

    # autoflush=False - manual flush control; expire_on_commit=False - objects stay usable after commit
    _SessionFactory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    return _engine


def get_session_factory() -> async_sessionmaker:
    if _SessionFactory is None:
        get_engine()
    assert _SessionFactory is not None, "Session factory is not initialized"
    return _SessionFactory


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """
    "Session as a transaction":
        async with session_scope() as db:
            ...
    Commits on success, rolls back on error, always closes.
    Used by scheduler jobs and scripts.
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency:
        @router.get("/users")
        async def list_users(db: AsyncSession = Depends(get_session)):
            ...
    One session per request with commit/rollback/close.
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """Creates every mapped table that does not exist yet (idempotent)."""
    from .models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: Optional[AsyncEngine] = None) -> None:
    from .models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def check_db_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """
    Simple health-check (SELECT 1). True when the connection works.
    Used by on_startup and /healthz.
    """
    engine = engine or get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        log.warning("[DB] health check failed: %s", e)
        return False


async def on_startup_init_db() -> None:
    """
    Called from main.py on application startup:
      1) Lazy engine/session factory initialisation.
      2) create_all() when DB_CREATE_ALL is on.
      3) Connection check; raises so the platform restarts the instance.
    """
    engine = get_engine()
    if get_settings().DB_CREATE_ALL:
        await create_tables(engine)
    ok = await check_db_connection(engine)
    if not ok:
        raise RuntimeError("Database connection failed during startup.")


async def on_shutdown_dispose() -> None:
    """Closes the engine on application shutdown."""
    global _engine, _SessionFactory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
    _SessionFactory = None
