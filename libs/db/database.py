"""Database setup for SQLAlchemy with async psycopg driver."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from libs.core.settings import get_settings

logger = logging.getLogger(__name__)

# Postgres-only indexes backing full-text search and array overlap filters
_POSTGRES_INDEXES = (
    "CREATE INDEX IF NOT EXISTS ix_fragments_fts ON fragments "
    "USING gin (to_tsvector('english', title || ' ' || body))",
    "CREATE INDEX IF NOT EXISTS ix_fragments_tags ON fragments USING gin (tags)",
    "CREATE INDEX IF NOT EXISTS ix_fragments_themes ON fragments USING gin (system_themes)",
    "CREATE INDEX IF NOT EXISTS ix_fragments_event_at ON fragments (event_at DESC)",
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""


@lru_cache
def get_engine() -> AsyncEngine:
    """Create the async engine on first use.

    pool_pre_ping validates connections before use and pool_recycle
    proactively replaces connections to survive Postgres restarts.
    """
    return create_async_engine(
        get_settings().postgres_uri,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide a transactional scope around a series of operations."""

    async with get_sessionmaker()() as session:  # pragma: no cover - simple wrapper
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(max_attempts: int = 5, delay: float = 5.0) -> None:
    """Create tables and indexes if necessary.

    Attempts to connect to the database multiple times with a delay
    between attempts. If all attempts fail, the last exception is propagated.
    """

    # Import models to ensure Base.metadata is populated
    from . import models  # noqa: F401

    def sync_init(sync_conn):  # type: ignore[no-untyped-def]
        Base.metadata.create_all(sync_conn)
        if sync_conn.dialect.name == "postgresql":
            for ddl in _POSTGRES_INDEXES:
                sync_conn.execute(text(ddl))

    last_exc: SQLAlchemyError | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            async with get_engine().begin() as conn:
                await conn.run_sync(sync_init)
            logger.info("DB schema ensured (attempt %d)", attempt)
            return
        except SQLAlchemyError as exc:  # pragma: no cover - best effort
            last_exc = exc
            if attempt == max_attempts:
                break
            logger.warning(
                "DB init attempt %d failed: %s. Retrying in %ss", attempt, exc, delay
            )
            await asyncio.sleep(delay)

    logger.error("DB init failed after %d attempts", max_attempts)
    if last_exc is not None:
        raise last_exc


__all__ = ["Base", "get_engine", "get_sessionmaker", "get_session", "init_db"]
