from __future__ import annotations

import contextlib
from typing import Dict, List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from trustgate.logging import get_logger
from trustgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Shared counter, blacklist and session-pointer store backed by Redis.

    Every compound read-modify-write runs as a Lua script so it executes as a
    single atomic unit on the server.
    """

    # KEYS: window counters followed by the concurrent counter
    # ARGV: one limit per key, then one TTL per key
    _RESERVE_SCRIPT = """
local n = #KEYS
local counts = {}
local allowed = 1
for i = 1, n do
  counts[i] = tonumber(redis.call('GET', KEYS[i]) or '0')
  if counts[i] >= tonumber(ARGV[i]) then
    allowed = 0
  end
end
if allowed == 0 then
  local result = {0}
  for i = 1, n do
    result[i + 1] = counts[i]
  end
  return result
end
local result = {1}
for i = 1, n do
  result[i + 1] = redis.call('INCR', KEYS[i])
  if i == n or redis.call('TTL', KEYS[i]) < 0 then
    redis.call('EXPIRE', KEYS[i], tonumber(ARGV[n + i]))
  end
end
return result
"""

    _RELEASE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
  return redis.call('DECR', KEYS[1])
end
return 0
"""

    _CAS_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    _INCR_TTL_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return value
"""

    # ARGV: response_ms, is_error, now_iso, day_field, month_field
    _USAGE_SCRIPT = """
local total = redis.call('HINCRBY', KEYS[1], 'totalRequests', 1)
local avg = tonumber(redis.call('HGET', KEYS[1], 'averageResponseTime') or '0')
avg = avg + (tonumber(ARGV[1]) - avg) / total
redis.call('HSET', KEYS[1], 'averageResponseTime', tostring(avg))
redis.call('HSET', KEYS[1], 'lastUsed', ARGV[3])
if ARGV[2] == '1' then
  redis.call('HINCRBY', KEYS[1], 'errorCount', 1)
  redis.call('HSET', KEYS[1], 'lastError', ARGV[3])
end
redis.call('HINCRBY', KEYS[1], ARGV[4], 1)
redis.call('HINCRBY', KEYS[1], ARGV[5], 1)
return total
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._reserve = self.client.register_script(self._RESERVE_SCRIPT)
        self._release = self.client.register_script(self._RELEASE_SCRIPT)
        self._cas = self.client.register_script(self._CAS_SCRIPT)
        self._incr_ttl = self.client.register_script(self._INCR_TTL_SCRIPT)
        self._usage = self.client.register_script(self._USAGE_SCRIPT)

    @contextlib.asynccontextmanager
    async def _store_call(self, operation: str):
        try:
            yield
        except RedisError as exc:
            logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(
                "counter store unavailable", {"operation": operation}
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        except RedisError as exc:
            raise StoreUnavailable("counter store unreachable", {"operation": "ping"}) from exc
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        async with self._store_call("ping"):
            return bool(await self.client.ping())

    async def get_multi(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        async with self._store_call("get_multi"):
            return list(await self.client.mget(list(keys)))

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        async with self._store_call("incr_with_ttl"):
            return int(await self._incr_ttl(keys=[key], args=[max(1, ttl_seconds)]))

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._store_call("set_if_absent_with_ttl"):
            return bool(await self.client.set(key, value, ex=max(1, ttl_seconds), nx=True))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        async with self._store_call("set_with_ttl"):
            await self.client.set(key, value, ex=max(1, ttl_seconds))

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl_seconds: int
    ) -> bool:
        """Replace ``key`` with ``new`` only if it currently holds ``expected``.

        ``expected=None`` means the key must be absent.
        """
        if expected is None:
            return await self.set_if_absent_with_ttl(key, new, ttl_seconds)
        async with self._store_call("compare_and_swap"):
            swapped = await self._cas(keys=[key], args=[expected, new, max(1, ttl_seconds)])
        return bool(int(swapped))

    async def delete(self, key: str) -> None:
        async with self._store_call("delete"):
            await self.client.delete(key)

    async def reserve_rate_limit(
        self,
        window_keys: Sequence[str],
        window_ttls: Sequence[int],
        limits: Sequence[int],
        concurrent_key: str,
        max_concurrent: int,
        concurrent_ttl: int = 3600,
    ) -> Tuple[bool, List[int]]:
        """Check every window and the concurrent counter, then increment all.

        Returns ``(allowed, counts)``. When denied nothing is written and
        ``counts`` holds the current values; otherwise the incremented ones.
        """
        keys = list(window_keys) + [concurrent_key]
        args = list(limits) + [max_concurrent] + list(window_ttls) + [concurrent_ttl]
        async with self._store_call("reserve_rate_limit"):
            result = await self._reserve(keys=keys, args=args)
        return bool(int(result[0])), [int(v) for v in result[1:]]

    async def release_concurrency(self, key: str) -> int:
        async with self._store_call("release_concurrency"):
            return int(await self._release(keys=[key]))

    async def record_usage(
        self,
        key: str,
        response_time_ms: float,
        is_error: bool,
        *,
        now_iso: str,
        day_field: str,
        month_field: str,
    ) -> int:
        async with self._store_call("record_usage"):
            total = await self._usage(
                keys=[key],
                args=[
                    float(response_time_ms),
                    "1" if is_error else "0",
                    now_iso,
                    day_field,
                    month_field,
                ],
            )
        return int(total)

    async def get_hash(self, key: str) -> Dict[str, str]:
        async with self._store_call("get_hash"):
            return dict(await self.client.hgetall(key))

    async def close(self) -> None:
        await self.client.aclose()
