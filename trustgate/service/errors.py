from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class defines an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - service_unavailable (503)
    - server_error (500)

    ``kind`` narrows the code for clients that must branch on it: a 401 with
    kind ``expired`` may be refreshed, ``invalid`` and ``revoked`` may not.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: Optional[str] = None

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        kind: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if kind is not None:
            self.kind = kind
        self.detail = detail or {}
        self.headers = headers or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = "invalid"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """A backing store is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


# Token lifecycle


class TokenMalformed(AuthenticationError):
    kind = "invalid"


class TokenInvalidSignature(AuthenticationError):
    kind = "invalid"


class TokenExpired(AuthenticationError):
    kind = "expired"


class TokenRevoked(AuthenticationError):
    kind = "revoked"


class TokenReuseDetected(AuthenticationError):
    """A rotated-out refresh token was presented; the whole session is revoked."""
    kind = "revoked"


class ConcurrentRotationLost(ConflictError):
    """Another request rotated the same refresh token first; retry once or re-login."""
    kind = "rotation_conflict"


class InvalidCredentials(AuthenticationError):
    kind = "invalid"


class ApiKeyRevoked(AuthenticationError):
    """API key is inactive or expired; both are reported identically."""
    kind = "revoked"


class UserInactive(ForbiddenError):
    kind = "inactive"


class UserNotFound(NotFoundError):
    pass


# RBAC


class PermissionDenied(ForbiddenError):
    kind = "permission_denied"


class ImmutableRole(ForbiddenError):
    kind = "immutable_role"


class RoleInUse(ConflictError):
    kind = "role_in_use"


# Admission control


class RateLimitExceeded(RateLimitedError):
    """Carries the limit, remaining counts and reset time of the denial."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        limit: int,
        remaining: Dict[str, int],
        reset_time: int,
        retry_after: int,
    ) -> None:
        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(max(0, remaining.get("minute", 0))),
            "X-RateLimit-Reset": str(reset_time),
            "Retry-After": str(max(1, retry_after)),
        }
        super().__init__(
            message,
            detail={"remaining": remaining, "reset_time": reset_time, "retry_after": retry_after},
            headers=headers,
        )
        self.limit = limit
        self.remaining = remaining
        self.reset_time = reset_time
        self.retry_after = retry_after


class CSRFError(ForbiddenError):
    pass


class CSRFTokenMissing(CSRFError):
    kind = "csrf_missing"


class CSRFTokenMismatch(CSRFError):
    kind = "csrf_mismatch"


class CSRFTokenExpired(CSRFError):
    kind = "csrf_expired"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "TokenMalformed",
    "TokenInvalidSignature",
    "TokenExpired",
    "TokenRevoked",
    "TokenReuseDetected",
    "ConcurrentRotationLost",
    "InvalidCredentials",
    "ApiKeyRevoked",
    "UserInactive",
    "UserNotFound",
    "PermissionDenied",
    "ImmutableRole",
    "RoleInUse",
    "RateLimitExceeded",
    "CSRFError",
    "CSRFTokenMissing",
    "CSRFTokenMismatch",
    "CSRFTokenExpired",
]
