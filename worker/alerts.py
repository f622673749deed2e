"""
Webhook alerts for the transcode worker.

Three events are reported: a job that ended FAILED, and worker startup and
shutdown. Failure alerts are rate limited per event type; startup and shutdown
always go out. Delivery is at-most-once: alerts run as detached tasks and a
slow or failing webhook is counted, logged and otherwise ignored.
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional

import httpx

from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH
from pipeline.errors import truncate_error

logger = logging.getLogger(__name__)

MAX_TRACKED_ASSETS = 1000


class AlertType(str, Enum):
    JOB_FAILED = "job_failed"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Per-process job outcome and alert delivery counters, attached to every alert."""

    jobs_completed: int = 0
    jobs_failed: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0
    # event type -> monotonic time of the last delivered alert
    last_sent: Dict[str, float] = field(default_factory=dict)
    # asset id -> failed attempts seen by this process, oldest entries dropped past the cap
    failures_by_asset: Counter = field(default_factory=Counter)
    max_tracked_assets: int = MAX_TRACKED_ASSETS

    def increment_completed(self) -> int:
        self.jobs_completed += 1
        return self.jobs_completed

    def increment_failed(self, asset_id: Optional[str] = None) -> int:
        self.jobs_failed += 1
        if asset_id is not None:
            if asset_id not in self.failures_by_asset and len(self.failures_by_asset) >= self.max_tracked_assets:
                del self.failures_by_asset[next(iter(self.failures_by_asset))]
            self.failures_by_asset[asset_id] += 1
        return self.jobs_failed

    def get_asset_failure_count(self, asset_id: str) -> int:
        return self.failures_by_asset[asset_id]

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = ALERT_RATE_LIMIT_SECONDS) -> bool:
        sent_at = self.last_sent.get(alert_type)
        return sent_at is None or time.monotonic() - sent_at >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str) -> None:
        self.last_sent[alert_type] = time.monotonic()
        self.alerts_sent += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "assets_with_failures": len(self.failures_by_asset),
        }


_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Start from zeroed counters (tests, or a worker restarting in-process)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Run an alert coroutine as a detached task on the running loop.

    Errors raised by the alert are logged at debug level and dropped. Without a
    running loop the coroutine is closed unawaited.
    """

    async def _deliver():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Detached alert failed: {e}")

    try:
        asyncio.create_task(_deliver())
    except RuntimeError:
        logger.debug("No running event loop, alert dropped")
        if asyncio.iscoroutine(coro):
            coro.close()


def _describe_http_error(e: httpx.HTTPError) -> str:
    if isinstance(e, httpx.TimeoutException):
        return f"timed out after {ALERT_WEBHOOK_TIMEOUT}s"
    if isinstance(e, httpx.HTTPStatusError):
        return f"returned HTTP {e.response.status_code}"
    return f"unreachable: {e}"


async def send_webhook_alert(alert_type: AlertType, details: Dict[str, Any], force: bool = False) -> bool:
    """
    POST one alert as JSON to ALERT_WEBHOOK_URL.

    Body: {"event", "timestamp", "details", "metrics"}. With force the per-type
    rate limit is bypassed.

    Returns:
        True if the webhook accepted the alert
    """
    if not ALERT_WEBHOOK_URL:
        return False

    metrics = get_metrics()
    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.alerts_rate_limited += 1
        logger.debug(f"Alert {alert_type.value} suppressed by rate limit")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }
    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(ALERT_WEBHOOK_URL, json=payload)
            response.raise_for_status()
    except httpx.HTTPError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook for {alert_type.value} {_describe_http_error(e)}")
        return False

    metrics.record_alert_sent(alert_type.value)
    logger.info(f"Alert sent: {alert_type.value}")
    return True


async def alert_job_failed(
    asset_id: str,
    step: str,
    error: str,
    progress: int = 0,
    worker_id: Optional[str] = None,
):
    """
    Report a job that ended FAILED.

    Args:
        asset_id: Asset whose job failed
        step: Pipeline step that raised (download, probe, transcode, ...)
        error: Error text, truncated to ERROR_DETAIL_MAX_LENGTH
        progress: Last persisted progress
        worker_id: Worker that held the claim
    """
    metrics = get_metrics()
    metrics.increment_failed(asset_id)
    await send_webhook_alert(
        AlertType.JOB_FAILED,
        {
            "asset_id": asset_id,
            "step": step,
            "error": truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
            "progress": progress,
            "worker_id": worker_id,
            "asset_failure_count": metrics.get_asset_failure_count(asset_id),
        },
    )


async def alert_worker_startup(worker_id: str, tiers: Optional[list] = None):
    await send_webhook_alert(AlertType.WORKER_STARTUP, {"worker_id": worker_id, "tiers": tiers or []}, force=True)


async def alert_worker_shutdown(worker_id: str, jobs_processed: int = 0):
    """Report a clean shutdown with this process's final counters."""
    details = {
        "worker_id": worker_id,
        "jobs_processed": jobs_processed,
        "final_metrics": get_metrics().to_dict(),
    }
    await send_webhook_alert(AlertType.WORKER_SHUTDOWN, details, force=True)
