from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from trustgate.api.error_handling import (
    error_response,
    register_exception_handlers,
    service_error_response,
)
from trustgate.api.routes import api_router, auth_router, session_binding
from trustgate.config import Settings
from trustgate.logging import get_logger, set_correlation_id
from trustgate.service.errors import CSRFError, RateLimitExceeded, ServiceError
from trustgate.service.runtime import get_runtime
from trustgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Cookie-bearing state changes outside /api that still need the CSRF echo
_CSRF_PROTECTED_AUTH_PATHS = frozenset({"/auth/refresh", "/auth/logout"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except StoreUnavailable as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Trustgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; never a wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-API-Key",
        _settings.csrf_header_name,
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def admit_api_key(request: Request, call_next):
    """Authenticate API-key callers on /api and hold a rate-limit slot for the request.

    Middleware exceptions skip the registered handlers, so rejections are
    rendered here directly.
    """
    if not request.url.path.startswith("/api/"):
        return await call_next(request)
    runtime = get_runtime()
    secret = runtime.api_keys.extract_api_key(
        request.headers.get("Authorization"), request.headers.get("X-API-Key")
    )
    if not secret:
        return await call_next(request)

    try:
        principal = runtime.auth.authenticate_api_key(secret)
    except ServiceError as exc:
        return service_error_response(exc)
    except StoreUnavailable:
        return error_response(503, "service temporarily unavailable", code="service_unavailable")

    try:
        async with runtime.rate_limiter.reservation(secret, tier=principal.tier) as result:
            request.state.principal = principal
            started = time.perf_counter()
            is_error = True
            try:
                response = await call_next(request)
                is_error = response.status_code >= 400
            finally:
                await runtime.rate_limiter.record_usage(
                    principal.api_key_id,
                    (time.perf_counter() - started) * 1000,
                    is_error,
                )
    except RateLimitExceeded as exc:
        return service_error_response(exc)
    except StoreUnavailable:
        return error_response(503, "service temporarily unavailable", code="service_unavailable")

    for name, value in result.headers().items():
        response.headers[name] = value
    return response


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check for cookie-carrying state changes.

    API-key callers and safe methods are exempt; exact trusted origins are
    exempted inside ``CSRFProtection.validate``. Tokens must be bound to the
    session the request authenticates as.
    """
    path = request.url.path
    runtime = get_runtime()
    if (
        not runtime.csrf.requires_validation(request.method)
        or not (path.startswith("/api/") or path in _CSRF_PROTECTED_AUTH_PATHS)
        or not request.cookies
        or runtime.api_keys.extract_api_key(
            request.headers.get("Authorization"), request.headers.get("X-API-Key")
        )
    ):
        return await call_next(request)
    settings = runtime.settings
    try:
        runtime.csrf.validate(
            request.cookies.get(settings.csrf_cookie_name),
            request.headers.get(settings.csrf_header_name),
            request.headers.get("Origin"),
            binding=session_binding(request),
        )
    except CSRFError as exc:
        return service_error_response(exc)
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    path = request.url.path
    if path.startswith("/api/") or path.startswith("/auth/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag the request with X-Request-ID (client-supplied or generated) for log tracing."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(auth_router)
app.include_router(api_router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report reachability of the credential store and the counter store."""
    runtime = get_runtime()

    async def _probe(label: str, coro) -> bool:
        try:
            return bool(await asyncio.wait_for(coro, HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except StoreUnavailable as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    store_ok = await _probe("credential_store", asyncio.to_thread(runtime.store.ping))
    cache_ok = await _probe("counter_store", runtime.cache.ping())
    checks = {
        "credential_store": {"status": "healthy" if store_ok else "unhealthy"},
        "counter_store": {
            "status": "healthy" if cache_ok else "unhealthy",
            "type": type(runtime.cache).__name__,
        },
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
