"""Submission Monitor: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# Logging is configured ahead of the remaining imports: structlog loggers
# freeze their processor chain the first time they log.
from submission_monitor.core.config import get_settings as _get_settings_early
from submission_monitor.core.logging import configure_structlog

_boot_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _boot_settings.debug else "INFO",
    json_logs=not _boot_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from submission_monitor.api.routes import api_router
from submission_monitor.core.config import Settings, get_settings
from submission_monitor.core.exceptions import MonitoringError, RateLimitedError
from submission_monitor.db import close_db, close_redis, get_redis, get_session_factory, init_db, init_redis
from submission_monitor.middleware.correlation import get_correlation_id, setup_correlation_middleware
from submission_monitor.services.engine import MonitoringEngine, build_engine

logger = structlog.get_logger(__name__)


def _install_drain_handler(app: FastAPI) -> None:
    """On SIGTERM, /api/health starts answering 503 so the load balancer drains us."""
    app.state.shutting_down = False

    def on_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("monitor_draining", signal="SIGTERM")

    signal.signal(signal.SIGTERM, on_sigterm)


async def _start_engine(app: FastAPI, settings: Settings) -> MonitoringEngine:
    await init_db()
    await init_redis()
    engine = build_engine(settings, get_session_factory(), get_redis())
    app.state.engine = engine
    if settings.scheduler_enabled:
        engine.scheduler.start()
    logger.info(
        "monitor_started",
        environment=settings.environment,
        scheduler=settings.scheduler_enabled,
        retry_stages=engine.registry.stages(),
        probes=[p.component for p in engine.health.probes],
    )
    return engine


async def _stop_engine(engine: MonitoringEngine) -> None:
    # Loops first, so no tick runs against a closed pool
    await engine.scheduler.stop()
    await close_redis()
    await close_db()
    logger.info("monitor_stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    _install_drain_handler(app)
    engine = await _start_engine(app, get_settings())
    try:
        yield
    finally:
        await _stop_engine(engine)


def _error_response(request: Request, status_code: int, detail: str, code: str, headers=None) -> JSONResponse:
    """``{detail, code, debug_id}`` body; the debug_id ties the response to the log line."""
    debug_id = str(uuid.uuid4())
    log = logger.warning if status_code < 500 else logger.error
    log(
        "request_failed",
        status_code=status_code,
        code=code,
        detail=detail,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        method=request.method,
        path=request.url.path,
        user_id=getattr(request.state, "user_id", None),
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code, "debug_id": debug_id},
        headers=headers,
    )


async def monitoring_exception_handler(request: Request, exc: MonitoringError) -> JSONResponse:
    headers = {"Retry-After": str(exc.retry_after)} if isinstance(exc, RateLimitedError) else None
    return _error_response(request, exc.status_code, str(exc), exc.code, headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_error", getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: full traceback in the log, nothing internal in the body."""
    debug_id = str(uuid.uuid4())
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        method=request.method,
        path=request.url.path,
        user_id=getattr(request.state, "user_id", None),
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "internal_error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Submission progress tracking, stale detection and automated recovery",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Admin dashboard origins; the public status page is same-origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.cors_allowed_origins],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    # Added last so it wraps everything and error responses carry the header too
    setup_correlation_middleware(app)

    app.add_exception_handler(MonitoringError, monitoring_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("submission_monitor.main:app", host="0.0.0.0", port=8000, reload=_boot_settings.debug)
