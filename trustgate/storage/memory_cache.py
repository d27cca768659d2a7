from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple


class MemoryCache:
    """In-process stand-in for RedisCache with the same atomic contract.

    Each operation runs entirely under one lock, which gives the same
    all-or-nothing behaviour the Lua scripts give in Redis. Only safe for a
    single process: used under TEST_MODE or ALLOW_REDIS_FALLBACK_DEV.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._lock = threading.Lock()

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    def _put(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = self._clock() + max(1, ttl_seconds) if ttl_seconds else None
        self._values[key] = (value, expires_at)

    def _incr(self, key: str, ttl_seconds: Optional[int], *, refresh_ttl: bool) -> int:
        entry = self._values.get(key)
        current = self._get_live(key)
        value = int(current or 0) + 1
        if current is None or refresh_ttl or entry is None or entry[1] is None:
            self._put(key, str(value), ttl_seconds)
        else:
            self._values[key] = (str(value), entry[1])
        return value

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def get_multi(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._get_live(k) for k in keys]

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            return self._incr(key, ttl_seconds, refresh_ttl=False)

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._get_live(key) is not None:
                return False
            self._put(key, value, ttl_seconds)
            return True

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._put(key, value, ttl_seconds)

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl_seconds: int
    ) -> bool:
        with self._lock:
            if self._get_live(key) != expected:
                return False
            self._put(key, new, ttl_seconds)
            return True

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def reserve_rate_limit(
        self,
        window_keys: Sequence[str],
        window_ttls: Sequence[int],
        limits: Sequence[int],
        concurrent_key: str,
        max_concurrent: int,
        concurrent_ttl: int = 3600,
    ) -> Tuple[bool, List[int]]:
        keys = list(window_keys) + [concurrent_key]
        all_limits = list(limits) + [max_concurrent]
        ttls = list(window_ttls) + [concurrent_ttl]
        with self._lock:
            counts = [int(self._get_live(k) or 0) for k in keys]
            if any(count >= limit for count, limit in zip(counts, all_limits)):
                return False, counts
            updated = []
            for index, (key, ttl) in enumerate(zip(keys, ttls)):
                is_concurrent = index == len(keys) - 1
                updated.append(self._incr(key, ttl, refresh_ttl=is_concurrent))
            return True, updated

    async def release_concurrency(self, key: str) -> int:
        with self._lock:
            entry = self._values.get(key)
            current = int(self._get_live(key) or 0)
            if current <= 0:
                return 0
            self._values[key] = (str(current - 1), entry[1] if entry else None)
            return current - 1

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
        with self._lock:
            stats = self._hashes.setdefault(key, {})
            total = int(stats.get("totalRequests", 0)) + 1
            avg = float(stats.get("averageResponseTime", 0))
            avg = avg + (float(response_time_ms) - avg) / total
            stats["totalRequests"] = str(total)
            stats["averageResponseTime"] = str(avg)
            stats["lastUsed"] = now_iso
            if is_error:
                stats["errorCount"] = str(int(stats.get("errorCount", 0)) + 1)
                stats["lastError"] = now_iso
            for bucket in (day_field, month_field):
                stats[bucket] = str(int(stats.get(bucket, 0)) + 1)
            return total

    async def get_hash(self, key: str) -> Dict[str, str]:
        with self._lock:
            return dict(self._hashes.get(key, {}))

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._hashes.clear()
