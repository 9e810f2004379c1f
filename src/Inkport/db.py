# src/Inkport/db.py
from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Inkport.config import load_settings

settings = load_settings()
log = structlog.get_logger()


def _normalize_url(url: str) -> str:
    # Upgrade to async drivers if user supplies sync URLs
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


DATABASE_URL = _normalize_url(settings.database_url)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_schema_initialized: bool = False


def is_sqlite() -> bool:
    return DATABASE_URL.startswith("sqlite")


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        kwargs: dict[str, object] = {}
        if DATABASE_URL.startswith("sqlite+aiosqlite://"):
            kwargs.update(connect_args={"timeout": 30})
            # Critical for in-memory DBs: share a single connection so schema persists
            if ":memory:" in DATABASE_URL:
                kwargs.update(poolclass=StaticPool)
            if os.environ.get("INKPORT_SQLITE_STATIC_POOL") == "1":
                kwargs.update(poolclass=StaticPool)
        elif DATABASE_URL.startswith("postgresql+asyncpg://"):
            kwargs.update(
                pool_pre_ping=True,
                pool_size=5,
                max_overflow=10,
                pool_timeout=30,
            )

        _engine = create_async_engine(DATABASE_URL, **kwargs)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        try:  # never block startup on logging
            from sqlalchemy.engine import make_url

            url = make_url(DATABASE_URL)
            log.info(
                "db.connection.config",
                backend=url.get_backend_name(),
                user=url.username or "",
                host=url.host or "",
                database=url.database or "",
                driver=url.drivername,
            )
        except Exception:
            pass
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def ensure_schema() -> None:
    """Create missing tables.

    Server databases are managed by Alembic migrations; this covers fresh SQLite
    files and the in-memory databases used by tests and local runs.
    """
    global _schema_initialized
    if _schema_initialized:
        return
    # Only auto-create for SQLite; server databases are migrated with Alembic
    if not is_sqlite():
        _schema_initialized = True
        return
    from Inkport import models as _models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _schema_initialized = True


async def ping() -> None:
    """Round-trip a trivial statement; raises when the database is unreachable."""
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


@contextlib.asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    sm = get_sessionmaker()
    async with sm() as s:
        try:
            yield s
            await s.commit()
        except Exception:
            log.debug("db.session.rollback", exc_info=True)
            await s.rollback()
            raise
