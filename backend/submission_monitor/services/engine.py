"""MonitoringEngine: builds and holds the long-lived monitoring services.

Services that carry process state (the operation registry, the tracker's
write-failure counter, probe bookkeeping) are created once here and shared
by the HTTP routes and the scheduler.
"""

import os
import socket
from dataclasses import dataclass
from functools import partial

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from submission_monitor.core.config import Settings
from submission_monitor.core.locking import SweepLock
from submission_monitor.core.rate_limit import RateLimiter
from submission_monitor.domain.retry import CircuitBreaker, RetryPolicy
from submission_monitor.queue.scheduler import MonitoringScheduler, PeriodicTask
from submission_monitor.schemas.health import ComponentKind
from submission_monitor.services.analytics_service import AnalyticsService
from submission_monitor.services.event_store import EventStore
from submission_monitor.services.health_aggregator import HealthAggregator
from submission_monitor.services.probes import DatabaseProbe, EventStoreProbe, HttpProbe, Probe, RedisProbe
from submission_monitor.services.public_status_service import PublicStatusService
from submission_monitor.services.retry_orchestrator import OperationRegistry, RetryOrchestrator
from submission_monitor.services.stage_tracker import StageTracker
from submission_monitor.services.stale_detector import StaleDetector
from submission_monitor.services.submission_directory import SqlSubmissionDirectory, SubmissionDirectory


@dataclass
class MonitoringEngine:
    settings: Settings
    event_store: EventStore
    tracker: StageTracker
    registry: OperationRegistry
    orchestrator: RetryOrchestrator
    stale_detector: StaleDetector
    analytics: AnalyticsService
    health: HealthAggregator
    public_status: PublicStatusService
    rate_limiter: RateLimiter
    scheduler: MonitoringScheduler


def build_probes(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    tracker: StageTracker,
) -> list[Probe]:
    probes: list[Probe] = [DatabaseProbe(session_factory), RedisProbe(redis_client), EventStoreProbe(tracker)]
    for name, url in sorted(settings.integration_probe_urls.items()):
        probes.append(HttpProbe(name, url, ComponentKind.INTEGRATION, settings.probe_timeout_seconds))
    for name, url in sorted(settings.ai_provider_probe_urls.items()):
        probes.append(HttpProbe(name, url, ComponentKind.AI_PROVIDER, settings.probe_timeout_seconds))
    return probes


def build_scheduler(engine: MonitoringEngine, lock: SweepLock | None) -> MonitoringScheduler:
    settings = engine.settings
    scheduler = MonitoringScheduler()
    scheduler.add(PeriodicTask("stale_sweep", settings.stale_sweep_interval_seconds, engine.stale_detector.sweep, lock))
    scheduler.add(PeriodicTask("retry_run", settings.retry_run_interval_seconds, engine.orchestrator.run_once, lock))
    scheduler.add(PeriodicTask("health_probes", settings.health_probe_interval_seconds, engine.health.run_probes, lock))
    if settings.cache_warm_interval_seconds > 0:
        scheduler.add(PeriodicTask("cache_warm", settings.cache_warm_interval_seconds, engine.analytics.warm))
    return scheduler


def build_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis_client: redis.Redis,
    directory: SubmissionDirectory | None = None,
    registry: OperationRegistry | None = None,
    probes: list[Probe] | None = None,
) -> MonitoringEngine:
    """Wire every service from settings and the shared clients."""
    event_store = EventStore(session_factory, strict_ordering=settings.strict_event_ordering)
    tracker = StageTracker(
        session_factory,
        event_store,
        directory or SqlSubmissionDirectory(session_factory),
        terminal_stages=settings.terminal_stages,
    )
    registry = registry or OperationRegistry()
    orchestrator = RetryOrchestrator(
        session_factory,
        tracker,
        registry,
        policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_seconds=settings.retry_backoff_base_seconds,
            multiplier=settings.retry_backoff_multiplier,
            cap_seconds=settings.retry_backoff_cap_seconds,
            jitter=settings.retry_backoff_jitter,
        ),
        lease_seconds=settings.retry_lease_seconds,
        operation_timeout_seconds=settings.retry_operation_timeout_seconds,
        batch_size=settings.retry_batch_size,
        breaker_factory=partial(
            CircuitBreaker,
            failure_threshold=settings.retry_circuit_failure_threshold,
            success_threshold=settings.retry_circuit_success_threshold,
            open_seconds=settings.retry_circuit_open_seconds,
            window_seconds=settings.retry_circuit_window_seconds,
        ),
    )
    tracker.attach_retry_intake(orchestrator)

    engine = MonitoringEngine(
        settings=settings,
        event_store=event_store,
        tracker=tracker,
        registry=registry,
        orchestrator=orchestrator,
        stale_detector=StaleDetector(
            session_factory,
            settings.stale_thresholds_minutes,
            settings.stale_default_threshold_minutes,
            orchestrator=orchestrator,
            auto_retry=settings.auto_retry_stale,
        ),
        analytics=AnalyticsService(
            session_factory,
            redis_client,
            ttl_seconds=settings.analytics_cache_ttl_seconds,
            error_window_days=settings.error_analysis_window_days,
            integration_window_hours=settings.integration_metrics_window_hours,
        ),
        health=HealthAggregator(
            session_factory,
            probes if probes is not None else build_probes(settings, session_factory, redis_client, tracker),
            latency_threshold_ms=settings.probe_latency_threshold_ms,
            timeout_seconds=settings.probe_timeout_seconds,
            history_default_hours=settings.health_history_default_hours,
        ),
        public_status=PublicStatusService(tracker, redis_client, settings.public_status_fallback_ttl_seconds),
        rate_limiter=RateLimiter(
            redis_client,
            limit=settings.public_status_rate_limit,
            window_seconds=settings.public_status_rate_window_seconds,
        ),
        scheduler=MonitoringScheduler(),
    )
    engine.scheduler = build_scheduler(engine, SweepLock(redis_client, owner=f"{socket.gethostname()}:{os.getpid()}"))
    return engine
