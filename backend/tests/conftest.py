"""Shared test fixtures: SQLite (or TEST_DATABASE_URL) store, fake Redis, wired engine."""

import os
import uuid
from datetime import UTC, datetime

import pytest
from fakeredis import aioredis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from submission_monitor.core.config import Settings
from submission_monitor.db.base import Base, engine_options
from submission_monitor.db.models.submission import Submission
from submission_monitor.services.engine import build_engine
from submission_monitor.services.retry_orchestrator import OperationRegistry

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def database_url(tmp_path) -> str:
    """PostgreSQL when TEST_DATABASE_URL is set, otherwise a throwaway SQLite file."""
    return os.getenv("TEST_DATABASE_URL") or f"sqlite+aiosqlite:///{tmp_path / 'monitor.db'}"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        admin_jwt_secret="test-secret",
        scheduler_enabled=False,
        integration_probe_urls={},
        ai_provider_probe_urls={},
        cloudwatch_metrics_enabled=False,
        _env_file=None,
    )


@pytest.fixture
async def db_engine(database_url) -> AsyncEngine:
    import submission_monitor.db.models  # noqa: F401

    engine = create_async_engine(database_url, echo=False, **engine_options(database_url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def dead_session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Sessions on a SQLite file inside a missing directory: every connect fails."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'monitor.db'}")
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def redis_client():
    client = aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def registry() -> OperationRegistry:
    return OperationRegistry()


@pytest.fixture
def monitor(settings, session_factory, redis_client, registry):
    """Fully wired MonitoringEngine over the test store."""
    return build_engine(settings, session_factory, redis_client, registry=registry)


@pytest.fixture
def make_submission(session_factory):
    """Insert a collaborator-owned submission row and return its id."""

    async def _make(project_id: uuid.UUID | None = None, pathway: str | None = "direct", created_at=None):
        submission = Submission(
            id=uuid.uuid4(),
            project_id=project_id or uuid.uuid4(),
            pathway=pathway,
            created_at=created_at or T0,
        )
        async with session_factory() as session:
            session.add(submission)
            await session.commit()
        return submission.id

    return _make
