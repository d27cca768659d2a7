from __future__ import annotations

import asyncio
import contextlib
import hashlib
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, Mapping, Optional

from trustgate.logging import fingerprint, get_logger, log_security_event
from trustgate.service.errors import RateLimitExceeded
from trustgate.storage.errors import NotFound, StoreUnavailable
from trustgate.storage.interfaces import CounterStore, CredentialStore
from trustgate.storage.models import RATE_LIMIT_TIERS, RateLimitTier, UsageStats

logger = get_logger(__name__)

# (window name, window size in seconds)
_WINDOWS = (("minute", 60), ("hour", 3600), ("day", 86400))

# Safety expiry for the concurrent counter in case a release is lost
CONCURRENT_SLOT_TTL_SECONDS = 3600


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: Dict[str, int]
    reset_time: int
    resets: Dict[str, int] = field(default_factory=dict)
    retry_after: int = 0

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining.get("minute", 0))),
            "X-RateLimit-Reset": str(self.reset_time),
        }


def _tier_limits(tier: RateLimitTier) -> Dict[str, int]:
    return {
        "minute": tier.requests_per_minute,
        "hour": tier.requests_per_hour,
        "day": tier.requests_per_day,
    }


class RateLimiter:
    """Per-API-key multi-window rate limiter with a concurrent-request cap.

    All four counters are checked and incremented by one atomic call into the
    counter store; nothing is incremented speculatively. Counter keys use the
    sha256 of the key secret, never the secret itself.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: CounterStore,
        *,
        tiers: Optional[Mapping[str, RateLimitTier]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tiers = dict(tiers or RATE_LIMIT_TIERS)
        self._clock = clock

    @staticmethod
    def _key_hash(api_key: str) -> str:
        return hashlib.sha256(api_key.encode()).hexdigest()

    @staticmethod
    def _concurrent_key(digest: str) -> str:
        # Braces keep every counter of one key in the same cluster slot
        return f"rate_limit:{{{digest}}}:concurrent"

    def _resolve_tier(self, api_key: str, tier_name: Optional[str]) -> tuple[str, RateLimitTier]:
        if tier_name is None:
            try:
                tier_name = self.store.find_api_key_by_secret(api_key).tier
            except NotFound:
                tier_name = "free"
        tier = self.tiers.get(tier_name)
        if tier is None:
            logger.warning("rate_limit_unknown_tier", tier=tier_name)
            return "free", self.tiers["free"]
        return tier_name, tier

    async def check_and_reserve(
        self, api_key: str, *, tier: Optional[str] = None
    ) -> RateLimitResult:
        tier_name, limits_tier = self._resolve_tier(api_key, tier)
        now = self._clock()
        digest = self._key_hash(api_key)
        limits = _tier_limits(limits_tier)

        window_keys = []
        window_ttls = []
        window_limits = []
        resets: Dict[str, int] = {}
        for name, size in _WINDOWS:
            bucket = int(now // size)
            window_keys.append(f"rate_limit:{{{digest}}}:{name}:{bucket}")
            window_ttls.append(size)
            window_limits.append(limits[name])
            resets[name] = (bucket + 1) * size

        try:
            allowed, counts = await self.cache.reserve_rate_limit(
                window_keys,
                window_ttls,
                window_limits,
                self._concurrent_key(digest),
                limits_tier.max_concurrent,
                CONCURRENT_SLOT_TTL_SECONDS,
            )
        except StoreUnavailable:
            # Fail closed: an unreachable counter store denies the request
            logger.error(
                "rate_limit_store_unavailable",
                key_fingerprint=fingerprint(api_key),
            )
            raise

        names = [name for name, _ in _WINDOWS] + ["concurrent"]
        all_limits = window_limits + [limits_tier.max_concurrent]
        remaining = {
            name: max(0, limit - count)
            for name, limit, count in zip(names, all_limits, counts)
        }

        retry_after = 0
        if not allowed:
            exhausted = [
                resets[name]
                for name, limit, count in zip(names[:3], window_limits, counts[:3])
                if count >= limit
            ]
            retry_after = max(1, int(min(exhausted) - now)) if exhausted else 1
            log_security_event(
                "rate_limit_exceeded",
                severity="warning",
                key_fingerprint=fingerprint(api_key),
                tier=tier_name,
                remaining=remaining,
            )

        return RateLimitResult(
            allowed=allowed,
            limit=limits_tier.requests_per_minute,
            remaining=remaining,
            reset_time=resets["minute"],
            resets=resets,
            retry_after=retry_after,
        )

    async def release(self, api_key: str) -> Optional[int]:
        """Give back the concurrent slot taken by ``check_and_reserve``."""
        try:
            return await self.cache.release_concurrency(
                self._concurrent_key(self._key_hash(api_key))
            )
        except StoreUnavailable as exc:
            # The slot expires on its own after CONCURRENT_SLOT_TTL_SECONDS
            logger.error(
                "rate_limit_release_failed",
                key_fingerprint=fingerprint(api_key),
                error=str(exc),
            )
            return None

    @contextlib.asynccontextmanager
    async def reservation(
        self, api_key: str, *, tier: Optional[str] = None
    ) -> AsyncIterator[RateLimitResult]:
        """Hold a rate-limit reservation for the duration of a request.

        Raises RateLimitExceeded when any limit is reached. Once a slot is
        taken it is released on every exit path, cancellation included.
        """
        result = await self.check_and_reserve(api_key, tier=tier)
        if not result.allowed:
            raise RateLimitExceeded(
                limit=result.limit,
                remaining=result.remaining,
                reset_time=result.reset_time,
                retry_after=result.retry_after,
            )
        try:
            yield result
        finally:
            await asyncio.shield(self.release(api_key))

    async def record_usage(
        self, api_key_id: str, response_time_ms: float, is_error: bool
    ) -> None:
        """Update usage counters; failures are logged and never reach the request."""
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        try:
            await self.cache.record_usage(
                f"usage_stats:{api_key_id}",
                response_time_ms,
                is_error,
                now_iso=now.isoformat(),
                day_field=f"requests:{now:%Y-%m-%d}",
                month_field=f"requests:{now:%Y-%m}",
            )
        except Exception as exc:
            logger.warning(
                "usage_recording_failed",
                api_key_id=api_key_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def get_usage_stats(self, api_key_id: str) -> UsageStats:
        raw = await self.cache.get_hash(f"usage_stats:{api_key_id}")
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)

        def _parse_ts(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return UsageStats(
            total_requests=int(raw.get("totalRequests", 0)),
            error_count=int(raw.get("errorCount", 0)),
            average_response_time_ms=round(float(raw.get("averageResponseTime", 0)), 3),
            last_used=_parse_ts(raw.get("lastUsed")),
            last_error=_parse_ts(raw.get("lastError")),
            requests_today=int(raw.get(f"requests:{now:%Y-%m-%d}", 0)),
            requests_this_month=int(raw.get(f"requests:{now:%Y-%m}", 0)),
        )
