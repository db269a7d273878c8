"""Tests for check_rate_limit in runtime.py.

Rate limits use the Redis token bucket when a cache is configured and an
in-process bucket otherwise. Invalid window_seconds is logged and defaults
to 60 seconds.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from hydroline_identity.service.runtime import Runtime, check_rate_limit, get_runtime


class TestCheckRateLimit:
    @pytest.fixture
    def mock_runtime(self):
        """A runtime with no Redis cache."""
        runtime = MagicMock(spec=Runtime)
        runtime.cache = None
        runtime._local_rate_limits = {}
        runtime._local_rate_limit_lock = asyncio.Lock()
        return runtime

    @pytest.fixture
    def mock_runtime_with_cache(self):
        runtime = MagicMock(spec=Runtime)
        runtime.cache = AsyncMock()
        runtime.cache.check_rate_limit = AsyncMock(return_value=True)
        return runtime

    async def test_zero_limit_always_passes(self, mock_runtime):
        assert await check_rate_limit(mock_runtime, "test_key", 0, 60) is True
        assert await check_rate_limit(mock_runtime, "test_key", -1, 60) is True
        assert await check_rate_limit(
            mock_runtime, "test_key", 0, 60, return_remaining=True
        ) == (True, 0, 0)

    async def test_invalid_window_logs_warning(self, mock_runtime):
        with patch("hydroline_identity.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 0)

            mock_logger.warning.assert_called_once()
            call_args = mock_logger.warning.call_args
            assert call_args[0][0] == "rate_limit_invalid_window"
            assert call_args[1]["window_seconds"] == 0

    async def test_valid_window_no_warning(self, mock_runtime):
        with patch("hydroline_identity.service.runtime.logger") as mock_logger:
            await check_rate_limit(mock_runtime, "test_key", 10, 60)
            mock_logger.warning.assert_not_called()

    async def test_bucket_exhausts(self, mock_runtime):
        for i in range(5):
            assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is True, f"call {i + 1}"
        assert await check_rate_limit(mock_runtime, "test_key", 5, 60) is False

    async def test_remaining_and_reset_reported(self, mock_runtime):
        allowed, remaining, reset = await check_rate_limit(
            mock_runtime, "test_key", 3, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 2, 0)

    async def test_different_keys_independent(self, mock_runtime):
        for _ in range(3):
            await check_rate_limit(mock_runtime, "key1", 3, 60)

        assert await check_rate_limit(mock_runtime, "key2", 3, 60) is True
        assert await check_rate_limit(mock_runtime, "key1", 3, 60) is False

    async def test_uses_redis_when_available(self, mock_runtime_with_cache):
        await check_rate_limit(mock_runtime_with_cache, "test_key", 10, 60)

        mock_runtime_with_cache.cache.check_rate_limit.assert_called_once_with(
            "test_key", 10, 60, return_remaining=False, cost=1
        )

    async def test_bucket_refills_after_window(self, mock_runtime):
        for _ in range(2):
            await check_rate_limit(mock_runtime, "test_key", 2, 1)
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is False

        tokens, _ = mock_runtime._local_rate_limits["test_key"]
        mock_runtime._local_rate_limits["test_key"] = (
            tokens,
            datetime.utcnow() - timedelta(seconds=2),
        )
        assert await check_rate_limit(mock_runtime, "test_key", 2, 1) is True


class TestRateLimitIntegration:
    async def test_concurrent_calls_with_memory_runtime(self):
        runtime = get_runtime()
        key = f"test_concurrent_{datetime.utcnow().timestamp()}"
        limit = 10

        results = await asyncio.gather(
            *[check_rate_limit(runtime, key, limit, 60) for _ in range(15)]
        )

        assert sum(1 for r in results if r is True) == limit
        assert sum(1 for r in results if r is False) == 5
