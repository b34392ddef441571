"""Shared SQLAlchemy base, portable column types and database initialization."""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, BigInteger, DateTime, Integer, make_url
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from submission_monitor.core.config import get_settings


class Base(DeclarativeBase):
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    PostgreSQL keeps the offset; SQLite drops it, so values read back are
    re-tagged as UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

# BIGSERIAL on PostgreSQL; SQLite only autoincrements INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    return datetime.now(UTC)


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(url: str, pool_size: int = 10) -> dict[str, Any]:
    """create_async_engine keyword arguments for the target backend."""
    if make_url(url).get_backend_name() == "sqlite":
        # Concurrent claims wait on SQLite's file lock instead of failing fast
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": pool_size}


async def init_db(url: str | None = None, create_tables: bool | None = None) -> None:
    """Open the shared engine and session factory; a second call is a no-op.

    Tables are created from the models unless ``database_create_tables`` is
    off, in which case the Alembic revision is expected to have run.
    """
    global _engine, _session_factory
    if _engine is not None:
        return

    settings = get_settings()
    url = url or settings.database_url
    _engine = create_async_engine(url, echo=settings.debug, **engine_options(url, settings.database_pool_size))
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)

    if settings.database_create_tables if create_tables is None else create_tables:
        import submission_monitor.db.models  # noqa: F401

        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
