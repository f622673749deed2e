"""Tests for the worker alerting system."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_job_failed,
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    reset_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)

WEBHOOK = "https://hooks.example.com/reelforge"


def _mock_http_client(mock_client_cls, post):
    instance = AsyncMock()
    instance.post = post
    mock_client_cls.return_value.__aenter__.return_value = instance
    return instance


class TestAlertMetrics:
    """Tests for AlertMetrics."""

    def test_initial_state(self):
        metrics = AlertMetrics()
        assert metrics.jobs_completed == 0
        assert metrics.jobs_failed == 0
        assert metrics.alerts_sent == 0

    def test_failures_tracked_per_asset(self):
        metrics = AlertMetrics()
        metrics.increment_failed("a1")
        metrics.increment_failed("a1")
        metrics.increment_failed("a2")
        metrics.increment_failed()

        assert metrics.jobs_failed == 4
        assert metrics.get_asset_failure_count("a1") == 2
        assert metrics.get_asset_failure_count("zzz") == 0

    def test_tracked_assets_capped(self):
        metrics = AlertMetrics(max_tracked_assets=3)
        for asset_id in ["a1", "a2", "a3", "a2", "a4", "a5"]:
            metrics.increment_failed(asset_id)

        assert metrics.jobs_failed == 6
        assert list(metrics.failures_by_asset) == ["a3", "a4", "a5"]
        assert metrics.get_asset_failure_count("a1") == 0
        assert metrics.to_dict()["assets_with_failures"] == 3

    def test_rate_limit_window(self):
        metrics = AlertMetrics()
        assert metrics.can_send_alert("job_failed", 300) is True

        metrics.record_alert_sent("job_failed")

        assert metrics.can_send_alert("job_failed", 300) is False
        assert metrics.can_send_alert("job_failed", 0) is True
        assert metrics.can_send_alert("worker_startup", 300) is True

    def test_to_dict(self):
        metrics = AlertMetrics()
        metrics.increment_completed()
        metrics.increment_failed("a1")

        assert metrics.to_dict() == {
            "jobs_completed": 1,
            "jobs_failed": 1,
            "alerts_sent": 0,
            "alerts_rate_limited": 0,
            "alerts_failed": 0,
            "assets_with_failures": 1,
        }

    def test_global_metrics_reset(self):
        get_metrics().increment_completed()
        reset_metrics()
        assert get_metrics().jobs_completed == 0


class TestSendWebhookAlert:
    """Tests for send_webhook_alert."""

    @pytest.mark.asyncio
    async def test_disabled_without_url(self):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", ""):
            with patch("httpx.AsyncClient") as mock_client:
                assert await send_webhook_alert(AlertType.JOB_FAILED, {}, force=True) is False
        mock_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_posts_payload(self):
        response = MagicMock()
        with patch("worker.alerts.ALERT_WEBHOOK_URL", WEBHOOK):
            with patch("httpx.AsyncClient") as mock_client:
                instance = _mock_http_client(mock_client, AsyncMock(return_value=response))

                assert await send_webhook_alert(AlertType.JOB_FAILED, {"asset_id": "a1"}) is True

        url = instance.post.call_args.args[0]
        payload = instance.post.call_args.kwargs["json"]
        assert url == WEBHOOK
        assert payload["event"] == "job_failed"
        assert payload["details"] == {"asset_id": "a1"}
        assert "timestamp" in payload and "metrics" in payload
        assert get_metrics().alerts_sent == 1

    @pytest.mark.asyncio
    async def test_rate_limiting(self):
        get_metrics().record_alert_sent(AlertType.JOB_FAILED.value)

        with patch("worker.alerts.ALERT_WEBHOOK_URL", WEBHOOK):
            assert await send_webhook_alert(AlertType.JOB_FAILED, {}) is False

        assert get_metrics().alerts_rate_limited == 1

    @pytest.mark.asyncio
    async def test_force_bypasses_rate_limiting(self):
        get_metrics().record_alert_sent(AlertType.WORKER_SHUTDOWN.value)

        with patch("worker.alerts.ALERT_WEBHOOK_URL", WEBHOOK):
            with patch("httpx.AsyncClient") as mock_client:
                _mock_http_client(mock_client, AsyncMock(return_value=MagicMock()))
                assert await send_webhook_alert(AlertType.WORKER_SHUTDOWN, {}, force=True) is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            httpx.TimeoutException("timeout"),
            httpx.HTTPStatusError("error", request=MagicMock(), response=MagicMock(status_code=502)),
            httpx.ConnectError("refused"),
        ],
    )
    async def test_http_failures_are_counted_not_raised(self, error):
        with patch("worker.alerts.ALERT_WEBHOOK_URL", WEBHOOK):
            with patch("httpx.AsyncClient") as mock_client:
                _mock_http_client(mock_client, AsyncMock(side_effect=error))
                assert await send_webhook_alert(AlertType.JOB_FAILED, {}, force=True) is False

        assert get_metrics().alerts_failed == 1


class TestAlertHelpers:
    """Tests for the typed alert helpers."""

    @pytest.mark.asyncio
    async def test_alert_job_failed(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_job_failed(asset_id="a1", step="transcode", error="x" * 2000, progress=50, worker_id="w1")

        alert_type, details = mock_send.call_args.args
        assert alert_type == AlertType.JOB_FAILED
        assert details["asset_id"] == "a1"
        assert details["step"] == "transcode"
        assert details["progress"] == 50
        assert details["worker_id"] == "w1"
        assert len(details["error"]) == 500
        assert details["asset_failure_count"] == 1
        assert get_metrics().jobs_failed == 1

    @pytest.mark.asyncio
    async def test_repeated_failures_for_same_asset(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_job_failed(asset_id="a1", step="probe", error="bad")
            await alert_job_failed(asset_id="a1", step="probe", error="bad")

        assert mock_send.call_args.args[1]["asset_failure_count"] == 2

    @pytest.mark.asyncio
    async def test_alert_worker_startup(self):
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_worker_startup(worker_id="w1", tiers=["360p", "720p"])

        mock_send.assert_awaited_once_with(
            AlertType.WORKER_STARTUP, {"worker_id": "w1", "tiers": ["360p", "720p"]}, force=True
        )

    @pytest.mark.asyncio
    async def test_alert_worker_shutdown(self):
        get_metrics().increment_completed()
        with patch("worker.alerts.send_webhook_alert", new_callable=AsyncMock) as mock_send:
            await alert_worker_shutdown(worker_id="w1", jobs_processed=3)

        details = mock_send.call_args.args[1]
        assert details["jobs_processed"] == 3
        assert details["final_metrics"]["jobs_completed"] == 1
        assert mock_send.call_args.kwargs["force"] is True


class TestFireAndForget:
    """Tests for fire-and-forget alert delivery."""

    @pytest.mark.asyncio
    async def test_schedules_task(self):
        called = asyncio.Event()

        async def alert():
            called.set()

        send_alert_fire_and_forget(alert())

        await asyncio.wait_for(called.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_exceptions_are_swallowed(self):
        async def failing_alert():
            raise ValueError("webhook exploded")

        send_alert_fire_and_forget(failing_alert())
        await asyncio.sleep(0.01)

    def test_without_running_loop_closes_coroutine(self):
        async def alert():
            raise AssertionError("should never run")

        coro = alert()
        send_alert_fire_and_forget(coro)

        assert coro.cr_frame is None
