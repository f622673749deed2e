"""Tests for job store transaction retries."""

import sqlite3
from unittest.mock import AsyncMock, patch

import pytest

from pipeline.db_retry import (
    DatabaseRetryableError,
    backoff_delay,
    execute_with_retry,
    transient_reason,
)
from pipeline.errors import PersistenceFailure


class TestTransientReason:
    """Tests for classifying database errors."""

    @pytest.mark.parametrize(
        "message,reason",
        [
            ("database is locked", "sqlite locked"),
            ("SQLITE_BUSY: some other text", "sqlite busy"),
            ("DATABASE IS LOCKED", "sqlite locked"),
            ("deadlock detected", "deadlock"),
            ("could not serialize access due to concurrent update", "serialization failure"),
            ("canceling statement due to lock timeout", "lock timeout"),
            ("server closed the connection unexpectedly", "connection lost"),
        ],
    )
    def test_transient_messages(self, message, reason):
        assert transient_reason(Exception(message)) == reason

    def test_sqlstate_attribute(self):
        """Driver exceptions exposing a retryable SQLSTATE are retried regardless of text."""
        exc = Exception("opaque driver error")
        exc.sqlstate = "40P01"
        assert transient_reason(exc) == "deadlock"

    def test_wrapped_cause(self):
        try:
            try:
                raise sqlite3.OperationalError("database is locked")
            except sqlite3.OperationalError as inner:
                raise RuntimeError("wrapped") from inner
        except RuntimeError as outer:
            assert transient_reason(outer) == "sqlite locked"

    def test_permanent_errors(self):
        assert transient_reason(sqlite3.OperationalError("no such table: assets")) is None
        assert transient_reason(ValueError("bad value")) is None


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_grows_exponentially(self):
        with patch("pipeline.db_retry.random.uniform", return_value=1.0):
            assert [backoff_delay(n, 0.1, 10.0) for n in range(3)] == pytest.approx([0.1, 0.2, 0.4])

    def test_capped_with_jitter(self):
        for attempt in range(10):
            assert backoff_delay(attempt, 0.5, 1.0) <= 1.25

    def test_never_zero(self):
        assert backoff_delay(0, 0.0, 0.0) == 0.01


class TestExecuteWithRetry:
    """Tests for execute_with_retry."""

    @pytest.mark.asyncio
    async def test_success_on_first_try(self):
        func = AsyncMock(return_value="claimed")

        assert await execute_with_retry(func) == "claimed"
        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self):
        func = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                sqlite3.OperationalError("database is locked"),
                "claimed",
            ]
        )

        with patch("pipeline.db_retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            result = await execute_with_retry(func, max_retries=3, base_delay=0.01)

        assert result == "claimed"
        assert func.call_count == 3
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_persistence_failure(self):
        func = AsyncMock(side_effect=sqlite3.OperationalError("database is locked"))

        with patch("pipeline.db_retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(DatabaseRetryableError) as exc_info:
                await execute_with_retry(func, operation="claim job", max_retries=2, base_delay=0.01)

        assert isinstance(exc_info.value, PersistenceFailure)
        assert "claim job failed after 3 attempts (sqlite locked)" in str(exc_info.value)
        assert func.call_count == 3

    @pytest.mark.asyncio
    async def test_zero_retries_tries_once(self):
        func = AsyncMock(side_effect=Exception("deadlock detected"))

        with pytest.raises(DatabaseRetryableError):
            await execute_with_retry(func, max_retries=0)

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_permanent_error_raised_immediately(self):
        func = AsyncMock(side_effect=ValueError("boom"))

        with pytest.raises(ValueError):
            await execute_with_retry(func, max_retries=5)

        assert func.call_count == 1

    @pytest.mark.asyncio
    async def test_passes_arguments(self):
        func = AsyncMock(return_value=1)

        await execute_with_retry(func, "a", key="b")

        func.assert_awaited_once_with("a", key="b")
