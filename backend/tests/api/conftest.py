"""API-specific test fixtures."""

from contextlib import asynccontextmanager

import pytest
from fakeredis import aioredis
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from submission_monitor.core.auth import AdminUser, require_admin
from submission_monitor.core.exceptions import MonitoringError
from submission_monitor.db.base import Base, engine_options
from submission_monitor.db.redis import set_redis
from submission_monitor.middleware.correlation import setup_correlation_middleware
from submission_monitor.services.engine import build_engine
from submission_monitor.services.retry_orchestrator import OperationRegistry


@pytest.fixture
def build_client(database_url, settings):
    """Factory for a TestClient whose store, cache and engine live in the client's own loop.

    Route handlers read ``app.state.engine``; /api/ready reads the module-level
    session factory and Redis client, so those globals are installed too.
    """
    from submission_monitor.api.routes import api_router
    from submission_monitor.main import generic_exception_handler, http_exception_handler, monitoring_exception_handler

    def _build(admin: bool = True, registry: OperationRegistry | None = None) -> TestClient:
        @asynccontextmanager
        async def test_lifespan(app: FastAPI):
            import submission_monitor.db.base as db_mod
            import submission_monitor.db.models  # noqa: F401

            engine = create_async_engine(database_url, echo=False, **engine_options(database_url))
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
                await conn.run_sync(Base.metadata.create_all)
            session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            redis_client = aioredis.FakeRedis(decode_responses=True)

            db_mod._engine = engine
            db_mod._session_factory = session_factory
            set_redis(redis_client)

            app.state.shutting_down = False
            app.state.engine = build_engine(settings, session_factory, redis_client, registry=registry)
            app.state.session_factory = session_factory
            yield
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
            await redis_client.aclose()
            set_redis(None)
            db_mod._engine = None
            db_mod._session_factory = None
            await engine.dispose()

        app = FastAPI(title="Submission Monitor - Test Client", lifespan=test_lifespan)
        setup_correlation_middleware(app)
        app.add_exception_handler(MonitoringError, monitoring_exception_handler)
        app.add_exception_handler(HTTPException, http_exception_handler)
        app.add_exception_handler(Exception, generic_exception_handler)
        app.include_router(api_router, prefix="/api")

        if admin:
            app.dependency_overrides[require_admin] = lambda: AdminUser(
                user_id="admin_test", role="admin", claims={"sub": "admin_test"}
            )
        return TestClient(app)

    return _build


@pytest.fixture
def api_client(build_client):
    """Client with the admin dependency satisfied."""
    with build_client() as client:
        yield client


@pytest.fixture
def anon_client(build_client):
    """Client that goes through real bearer-token checks."""
    with build_client(admin=False) as client:
        yield client
