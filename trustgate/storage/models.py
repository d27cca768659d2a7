from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional, Set


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    roles: Set[str] = field(default_factory=lambda: {"user"})
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    """Anchor for refresh-token rotation; at most one current refresh jti."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class Role:
    name: str
    permissions: FrozenSet[str]
    description: Optional[str] = None
    is_system: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class RateLimitTier:
    requests_per_minute: int
    requests_per_hour: int
    requests_per_day: int
    max_concurrent: int


RATE_LIMIT_TIERS: Dict[str, RateLimitTier] = {
    "free": RateLimitTier(
        requests_per_minute=60,
        requests_per_hour=1000,
        requests_per_day=10000,
        max_concurrent=5,
    ),
    "premium": RateLimitTier(
        requests_per_minute=300,
        requests_per_hour=10000,
        requests_per_day=100000,
        max_concurrent=20,
    ),
    "enterprise": RateLimitTier(
        requests_per_minute=1000,
        requests_per_hour=50000,
        requests_per_day=1000000,
        max_concurrent=100,
    ),
}


@dataclass
class ApiKey:
    id: str
    user_id: str
    name: str
    secret_hash: str
    prefix: str
    scopes: List[str] = field(default_factory=list)
    tier: str = "free"
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """Expired keys are treated exactly like revoked ones."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or _utcnow())


@dataclass
class UsageStats:
    total_requests: int = 0
    error_count: int = 0
    average_response_time_ms: float = 0.0
    last_used: Optional[datetime] = None
    last_error: Optional[datetime] = None
    requests_today: int = 0
    requests_this_month: int = 0


@dataclass
class TokenClaims:
    subject: str
    issuer: str
    audience: str
    issued_at: int
    expires_at: int
    token_id: str
    session_id: str
    token_type: str
    roles: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> "TokenClaims":
        return cls(
            subject=payload["sub"],
            issuer=payload["iss"],
            audience=payload["aud"],
            issued_at=int(payload["iat"]),
            expires_at=int(payload["exp"]),
            token_id=payload["jti"],
            session_id=payload["sid"],
            token_type=payload["type"],
            roles=list(payload.get("roles") or []),
            scopes=list(payload.get("scopes") or []),
        )


SYSTEM_ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "user": frozenset(
        {
            "read:profile",
            "update:profile",
            "read:own-api-keys",
            "create:own-api-keys",
            "delete:own-api-keys",
        }
    ),
    "admin": frozenset(
        {
            "read:users",
            "update:users",
            "delete:users",
            "read:api-keys",
            "create:api-keys",
            "delete:api-keys",
            "read:roles",
            "update:roles",
            "read:system-metrics",
        }
    ),
    "super_admin": frozenset({"*"}),
}

SYSTEM_ROLES: FrozenSet[str] = frozenset(SYSTEM_ROLE_PERMISSIONS)
