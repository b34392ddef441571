"""CloudWatch custom metrics for retry outcomes and health probe latency.

All functions are fire-and-forget: failures are logged via structlog and
never raised to the caller. boto3 is synchronous, so put_metric_data runs on
a small thread pool. Emission is disabled unless
``cloudwatch_metrics_enabled`` is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from submission_monitor.core.config import get_settings

logger = structlog.get_logger(__name__)

NAMESPACE = "SubmissionMonitor"

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().cloudwatch_region)
    return _cw_client


def _put_metric(metric_name: str, dimensions: dict[str, str], value: float, unit: str) -> None:
    """Synchronous put_metric_data. Runs in the thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace=NAMESPACE,
            MetricData=[{
                "MetricName": metric_name,
                "Dimensions": [{"Name": k, "Value": v} for k, v in dimensions.items()],
                "Value": value,
                "Unit": unit,
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric_name)


def _submit(metric_name: str, dimensions: dict[str, str], value: float, unit: str) -> bool:
    if not get_settings().cloudwatch_metrics_enabled:
        return False
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_metric, metric_name, dimensions, value, unit)
    return True


async def emit_retry_outcome(stage: str, outcome: str) -> bool:
    """Count one retry attempt outcome (succeeded, queued, exhausted) per stage."""
    return _submit("RetryOutcome", {"Stage": stage, "Outcome": outcome}, 1.0, "Count")


async def emit_probe_latency(component: str, status: str, latency_ms: float) -> bool:
    """Record how long a health probe took."""
    return _submit("ProbeLatency", {"Component": component, "Status": status}, latency_ms, "Milliseconds")
