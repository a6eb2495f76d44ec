"""
Unit Tests for Retry With Backoff
"""
import pytest
from unittest.mock import AsyncMock, Mock, patch


class TestBackoff:
    """Tests for the delay schedule"""

    def test_exponential_and_capped(self):
        """Test delays double and stop at the cap"""
        from nrinstall.services.retry import backoff_delay

        assert [backoff_delay(n, 1.0, 5.0) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


class TestWithRetry:
    """Tests for bounded retries"""

    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        """Test the operation is retried until it succeeds"""
        from nrinstall.services.retry import with_retry

        operation = AsyncMock(side_effect=[ValueError("a"), ValueError("b"), "ok"])
        on_retry = Mock()

        with patch("nrinstall.services.retry.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await with_retry(operation, retries=3, retry_delay=1.0, max_delay=10.0, on_retry=on_retry)

        assert result == "ok"
        assert operation.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]
        assert [call.args[0] for call in on_retry.call_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        """Test the last error is raised once retries run out"""
        from nrinstall.services.retry import with_retry

        operation = AsyncMock(side_effect=ValueError("always"))
        on_error = AsyncMock()

        with pytest.raises(ValueError, match="always"):
            await with_retry(operation, retries=2, retry_delay=0, on_error=on_error)

        assert operation.await_count == 3
        on_error.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_zero_retries_runs_once(self):
        """Test retries=0 means a single attempt"""
        from nrinstall.services.retry import with_retry

        operation = AsyncMock(side_effect=ValueError("once"))
        with pytest.raises(ValueError):
            await with_retry(operation, retries=0, retry_delay=0)
        assert operation.await_count == 1

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self):
        """Test errors outside retry_on are not retried"""
        from nrinstall.core.exceptions import ExecutionError, ValidationError
        from nrinstall.services.retry import with_retry

        operation = AsyncMock(side_effect=ValidationError("rejected"))
        with pytest.raises(ValidationError):
            await with_retry(operation, retries=5, retry_delay=0, retry_on=(ExecutionError,))
        assert operation.await_count == 1
