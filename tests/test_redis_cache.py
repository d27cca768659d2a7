"""Unit tests for the Redis-backed counter store.

Redis itself is not needed: the registered Lua scripts and client calls are
replaced with mocks so only argument marshalling and error translation run.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from trustgate.storage.errors import StoreUnavailable
from trustgate.storage.redis_cache import RedisCache


@pytest.fixture
def cache():
    return RedisCache("redis://localhost:6379/15")


class TestScripts:
    """Argument layout for the atomic scripts."""

    async def test_reserve_passes_limits_then_ttls(self, cache):
        cache._reserve = AsyncMock(return_value=[1, 3, 10, 20, 1])

        allowed, counts = await cache.reserve_rate_limit(
            ["m", "h", "d"], [60, 3600, 86400], [5, 100, 1000], "c", 2, 3600
        )

        assert allowed is True
        assert counts == [3, 10, 20, 1]
        cache._reserve.assert_awaited_once_with(
            keys=["m", "h", "d", "c"],
            args=[5, 100, 1000, 2, 60, 3600, 86400, 3600],
        )

    async def test_reserve_denied(self, cache):
        cache._reserve = AsyncMock(return_value=[0, 5, 10, 20, 1])

        allowed, counts = await cache.reserve_rate_limit(
            ["m", "h", "d"], [60, 3600, 86400], [5, 100, 1000], "c", 2
        )

        assert allowed is False
        assert counts == [5, 10, 20, 1]

    async def test_compare_and_swap(self, cache):
        cache._cas = AsyncMock(return_value=1)

        assert await cache.compare_and_swap("k", "old", "new", 60) is True
        cache._cas.assert_awaited_once_with(keys=["k"], args=["old", "new", 60])

        cache._cas = AsyncMock(return_value=0)
        assert await cache.compare_and_swap("k", "stale", "new", 60) is False

    async def test_compare_and_swap_from_absent_uses_nx(self, cache):
        cache.client.set = AsyncMock(return_value=True)

        assert await cache.compare_and_swap("k", None, "new", 0) is True
        cache.client.set.assert_awaited_once_with("k", "new", ex=1, nx=True)

    async def test_usage_flags_errors(self, cache):
        cache._usage = AsyncMock(return_value=7)

        total = await cache.record_usage(
            "usage_stats:k1",
            12.5,
            True,
            now_iso="2024-01-01T00:00:00+00:00",
            day_field="requests:2024-01-01",
            month_field="requests:2024-01",
        )

        assert total == 7
        args = cache._usage.await_args.kwargs["args"]
        assert args[:2] == [12.5, "1"]
        assert args[3:] == ["requests:2024-01-01", "requests:2024-01"]

    async def test_get_multi_empty_skips_round_trip(self, cache):
        cache.client.mget = AsyncMock()
        assert await cache.get_multi([]) == []
        cache.client.mget.assert_not_awaited()


class TestFailures:
    """Backend errors surface as StoreUnavailable."""

    @pytest.mark.parametrize("error", [RedisConnectionError("down"), RedisTimeoutError("slow")])
    async def test_script_failure_translated(self, cache, error):
        cache._reserve = AsyncMock(side_effect=error)

        with pytest.raises(StoreUnavailable) as exc_info:
            await cache.reserve_rate_limit(["m"], [60], [5], "c", 1)
        assert exc_info.value.detail == {"operation": "reserve_rate_limit"}

    async def test_client_failure_translated(self, cache):
        cache.client.mget = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(StoreUnavailable):
            await cache.get_multi(["blacklist:abc"])

    async def test_failure_is_logged(self, cache):
        cache.client.hgetall = AsyncMock(side_effect=RedisConnectionError("down"))

        with patch("trustgate.storage.redis_cache.logger") as mock_logger:
            with pytest.raises(StoreUnavailable):
                await cache.get_hash("usage_stats:k1")

        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[1]["operation"] == "get_hash"

    def test_verify_connection_failure(self, cache):
        client = MagicMock()
        client.ping.side_effect = RedisConnectionError("refused")

        with patch("trustgate.storage.redis_cache.Redis.from_url", return_value=client):
            with pytest.raises(StoreUnavailable):
                cache.verify_connection()

        client.close.assert_called_once()
