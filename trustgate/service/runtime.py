from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from trustgate.config import get_settings, reset_settings_cache
from trustgate.logging import get_logger
from trustgate.service.api_keys import ApiKeyService
from trustgate.service.auth import AuthService
from trustgate.service.csrf import CSRFProtection
from trustgate.service.passwords import PasswordService
from trustgate.service.rate_limit import RateLimiter
from trustgate.service.rbac import PermissionResolver
from trustgate.service.tokens import TokenService
from trustgate.storage.errors import StoreUnavailable
from trustgate.storage.memory import MemoryStore
from trustgate.storage.memory_cache import MemoryCache
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore()

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                self.cache = cache
            except StoreUnavailable as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for token blacklists, refresh rotation and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; blacklists and rate-limit "
                    "counters are local to this process."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.passwords = PasswordService(self.settings.password_pepper)
        self.resolver = PermissionResolver(self.store)
        self.tokens = TokenService(self.store, self.cache, self.settings)
        self.csrf = CSRFProtection(self.settings)
        self.rate_limiter = RateLimiter(self.store, self.cache)
        self.api_keys = ApiKeyService(self.store, self.resolver, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            self.tokens,
            self.passwords,
            self.csrf,
            self.resolver,
            self.api_keys,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            csrf_trusted_origins=len(self.settings.csrf_trusted_origins),
        )

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two threads from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
