from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

MAX_SCOPES = 50

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values.

    ``kind`` refines 401/403/409 responses; clients refresh only on
    ``expired`` and never retry ``invalid`` or ``revoked``.
    """

    code: str = Field(..., description="Stable error code")
    message: str
    kind: Optional[str] = None
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 256:
        raise ValueError("password must be at most 256 characters")
    return value


def _validate_scope_list(value: List[str]) -> List[str]:
    if len(value) > MAX_SCOPES:
        raise ValueError(f"at most {MAX_SCOPES} scopes are allowed")
    return [item.strip() for item in value]


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    # Not format-checked: a malformed address fails like any unknown one
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    roles: List[str]
    is_active: bool
    created_at: datetime


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
    csrf_token: str


class CSRFTokenResponse(BaseModel):
    csrf_token: str
    expires_at: int


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class ApiKeyCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    scopes: List[str] = Field(default_factory=list)
    tier: str = Field(default="free", pattern="^(free|premium|enterprise)$")
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)

    @field_validator("scopes")
    @classmethod
    def _validate_scopes(cls, value: List[str]) -> List[str]:
        return _validate_scope_list(value)


class ApiKeyScopesRequest(BaseModel):
    scopes: List[str]

    @field_validator("scopes")
    @classmethod
    def _validate_scopes(cls, value: List[str]) -> List[str]:
        return _validate_scope_list(value)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    prefix: str
    scopes: List[str]
    tier: str
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Carries the secret; it is shown once and never again."""

    secret: str


class UsageStatsResponse(BaseModel):
    total_requests: int
    error_count: int
    average_response_time_ms: float
    last_used: Optional[datetime] = None
    last_error: Optional[datetime] = None
    requests_today: int
    requests_this_month: int


class RoleRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=64)
    permissions: List[str] = Field(default_factory=list)
    description: Optional[str] = Field(default=None, max_length=512)


class RolePermissionsRequest(BaseModel):
    permissions: List[str]


class RoleResponse(BaseModel):
    name: str
    permissions: List[str]
    description: Optional[str] = None
    is_system: bool


class UserRolesRequest(BaseModel):
    roles: List[str] = Field(..., min_length=1)
