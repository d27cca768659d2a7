from __future__ import annotations

from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Header, Path, Request, Response

from trustgate.api.schemas import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    ApiKeyScopesRequest,
    AuthResponse,
    CSRFTokenResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    RegisterRequest,
    RolePermissionsRequest,
    RoleRequest,
    RoleResponse,
    SessionResponse,
    TokenRefreshRequest,
    UsageStatsResponse,
    UserResponse,
    UserRolesRequest,
)
from trustgate.logging import get_logger
from trustgate.service.auth import AuthContext, IssuedTokens, extract_bearer
from trustgate.service.errors import AuthenticationError, PermissionDenied
from trustgate.service.runtime import get_runtime
from trustgate.storage.models import ApiKey, Role, User

logger = get_logger(__name__)

REFRESH_COOKIE_NAME = "refresh_token"

auth_router = APIRouter(prefix="/auth", tags=["auth"])
api_router = APIRouter(prefix="/api", tags=["api"])


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    """Caller identity: an API key admitted by middleware, else a bearer access token."""
    principal = getattr(request.state, "principal", None)
    if principal is not None:
        return principal
    runtime = get_runtime()
    return await runtime.auth.authenticate_bearer(authorization)


def require_permissions(*permissions: str):
    """Dependency factory: the caller must hold every listed permission."""

    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        get_runtime().auth.authorize(principal, permissions)
        return principal

    return _dependency


def _holds(principal: AuthContext, permission: str) -> bool:
    runtime = get_runtime()
    try:
        runtime.auth.authorize(principal, [permission])
    except PermissionDenied:
        return False
    return True


def _ensure_grantable(principal: AuthContext, permissions: Iterable[str]) -> None:
    # Role editors cannot hand out permissions they do not hold themselves
    runtime = get_runtime()
    denied = [p for p in permissions if not runtime.resolver.authorize(principal.roles, p)]
    if denied:
        logger.info("role_grant_denied", user_id=principal.user_id, permissions=sorted(denied))
        raise PermissionDenied("insufficient permissions")


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        roles=sorted(user.roles),
        is_active=user.is_active,
        created_at=user.created_at,
    )


def _api_key_to_response(api_key: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=api_key.id,
        name=api_key.name,
        prefix=api_key.prefix,
        scopes=list(api_key.scopes),
        tier=api_key.tier,
        is_active=api_key.is_active,
        created_at=api_key.created_at,
        expires_at=api_key.expires_at,
        last_used_at=api_key.last_used_at,
    )


def _role_to_response(role: Role) -> RoleResponse:
    return RoleResponse(
        name=role.name,
        permissions=sorted(role.permissions),
        description=role.description,
        is_system=role.is_system,
    )


def session_binding(request: Request) -> Optional[str]:
    """Session a cookie-carrying request belongs to, for CSRF binding.

    The bearer access token wins; otherwise the refresh cookie identifies it.
    Anonymous requests have no binding.
    """
    tokens = get_runtime().tokens
    session_id = tokens.session_id_of(extract_bearer(request.headers.get("Authorization")))
    if session_id is None:
        session_id = tokens.session_id_of(
            request.cookies.get(REFRESH_COOKIE_NAME), token_type="refresh"
        )
    return session_id


def _set_csrf_cookie(response: Response, token: str) -> None:
    settings = get_runtime().settings
    # Readable by page scripts so they can echo it in the header
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        httponly=False,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.csrf_token_ttl_seconds,
        path="/",
    )


def _apply_auth_cookies(response: Response, issued: IssuedTokens) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        issued.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/auth",
    )
    _set_csrf_cookie(response, issued.csrf_token)


def _clear_auth_cookies(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(REFRESH_COOKIE_NAME, path="/auth")
    response.delete_cookie(settings.csrf_cookie_name, path="/")


def _auth_response(issued: IssuedTokens) -> AuthResponse:
    return AuthResponse(
        user_id=issued.user_id,
        session_id=issued.session_id,
        access_token=issued.access_token,
        access_expires_at=issued.access_expires_at,
        refresh_token=issued.refresh_token,
        refresh_expires_at=issued.refresh_expires_at,
        csrf_token=issued.csrf_token,
    )


# auth


@auth_router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    user = runtime.auth.register(body.email, body.password)
    return Envelope(status="ok", data=_user_to_response(user))


@auth_router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange credentials for an access/refresh token pair.

    Sets the refresh cookie (httpOnly, scoped to /auth) and a fresh CSRF
    cookie bound to the new session.
    """
    runtime = get_runtime()
    issued = await runtime.auth.login(
        body.email,
        body.password,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )
    _apply_auth_cookies(response, issued)
    return Envelope(status="ok", data=_auth_response(issued))


@auth_router.post("/refresh", response_model=Envelope)
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE_NAME)
    issued = await runtime.auth.refresh(token)
    _apply_auth_cookies(response, issued)
    return Envelope(status="ok", data=_auth_response(issued))


@auth_router.post("/logout", response_model=Envelope)
async def logout(response: Response, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    claims = await runtime.auth.logout(token)
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"session_id": claims.session_id, "revoked": True})


@auth_router.get("/csrf-token", response_model=Envelope)
async def csrf_token(request: Request, response: Response):
    """Return the current CSRF token, issuing a new one when absent, stale or bound elsewhere."""
    runtime = get_runtime()
    binding = session_binding(request)
    current = request.cookies.get(runtime.settings.csrf_cookie_name)
    expires_at = runtime.csrf.current_expiry(current, binding=binding)
    if expires_at is None:
        current, expires_at = runtime.csrf.issue_token(binding)
        _set_csrf_cookie(response, current)
    return Envelope(status="ok", data=CSRFTokenResponse(csrf_token=current, expires_at=expires_at))


# profile and sessions


@api_router.get("/me", response_model=Envelope)
async def get_me(principal: AuthContext = Depends(require_permissions("read:profile"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_to_response(runtime.auth.get_user(principal.user_id)))


@api_router.post("/me/password", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    principal: AuthContext = Depends(require_permissions("update:profile")),
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    _clear_auth_cookies(response)
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@api_router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: AuthContext = Depends(require_permissions("read:profile"))):
    runtime = get_runtime()
    sessions = runtime.tokens.get_active_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=s.id,
                created_at=s.created_at,
                expires_at=s.expires_at,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                current=s.id == principal.session_id,
            )
            for s in sessions
        ],
    )


@api_router.delete("/sessions", response_model=Envelope)
async def revoke_other_sessions(
    principal: AuthContext = Depends(require_permissions("update:profile")),
):
    runtime = get_runtime()
    revoked = await runtime.tokens.revoke_all_user_sessions(
        principal.user_id, except_session_id=principal.session_id, reason="user_revoked"
    )
    return Envelope(status="ok", data={"sessions_revoked": revoked})


# api keys


@api_router.get("/api-keys", response_model=Envelope)
async def list_api_keys(
    principal: AuthContext = Depends(require_permissions("read:own-api-keys")),
):
    runtime = get_runtime()
    keys = runtime.api_keys.list_api_keys(principal.user_id)
    return Envelope(status="ok", data=[_api_key_to_response(k) for k in keys])


@api_router.post("/api-keys", response_model=Envelope, status_code=201)
async def create_api_key(
    body: ApiKeyCreateRequest,
    principal: AuthContext = Depends(require_permissions("create:own-api-keys")),
):
    if principal.is_api_key:
        raise PermissionDenied("api keys cannot create api keys")
    runtime = get_runtime()
    api_key, secret = runtime.api_keys.create_api_key(
        principal.user_id,
        body.name,
        scopes=body.scopes,
        tier=body.tier,
        expires_in_days=body.expires_in_days,
    )
    data = ApiKeyCreatedResponse(**_api_key_to_response(api_key).model_dump(), secret=secret)
    return Envelope(status="ok", data=data)


@api_router.delete("/api-keys/{key_id}", response_model=Envelope)
async def revoke_api_key(
    key_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("delete:own-api-keys")),
):
    runtime = get_runtime()
    api_key = runtime.api_keys.revoke_api_key(
        key_id, actor_id=principal.user_id, is_admin=_holds(principal, "delete:api-keys")
    )
    return Envelope(status="ok", data=_api_key_to_response(api_key))


@api_router.put("/api-keys/{key_id}/scopes", response_model=Envelope)
async def update_api_key_scopes(
    body: ApiKeyScopesRequest,
    key_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("create:own-api-keys")),
):
    if principal.is_api_key:
        raise PermissionDenied("api keys cannot change api key scopes")
    runtime = get_runtime()
    api_key = runtime.api_keys.update_scopes(
        key_id,
        body.scopes,
        actor_id=principal.user_id,
        is_admin=_holds(principal, "create:api-keys"),
    )
    return Envelope(status="ok", data=_api_key_to_response(api_key))


@api_router.get("/api-keys/{key_id}/usage", response_model=Envelope)
async def get_api_key_usage(
    key_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("read:own-api-keys")),
):
    runtime = get_runtime()
    api_key = runtime.api_keys.get_api_key(
        key_id, actor_id=principal.user_id, is_admin=_holds(principal, "read:api-keys")
    )
    stats = await runtime.rate_limiter.get_usage_stats(api_key.id)
    return Envelope(
        status="ok",
        data=UsageStatsResponse(
            total_requests=stats.total_requests,
            error_count=stats.error_count,
            average_response_time_ms=stats.average_response_time_ms,
            last_used=stats.last_used,
            last_error=stats.last_error,
            requests_today=stats.requests_today,
            requests_this_month=stats.requests_this_month,
        ),
    )


# roles and users


@api_router.get("/roles", response_model=Envelope)
async def list_roles(principal: AuthContext = Depends(require_permissions("read:roles"))):
    runtime = get_runtime()
    return Envelope(status="ok", data=[_role_to_response(r) for r in runtime.resolver.list_roles()])


@api_router.post("/roles", response_model=Envelope, status_code=201)
async def create_role(
    body: RoleRequest,
    principal: AuthContext = Depends(require_permissions("update:roles")),
):
    runtime = get_runtime()
    _ensure_grantable(principal, body.permissions)
    role = runtime.resolver.create_role(body.name, body.permissions, body.description)
    return Envelope(status="ok", data=_role_to_response(role))


@api_router.put("/roles/{name}", response_model=Envelope)
async def update_role(
    body: RolePermissionsRequest,
    name: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("update:roles")),
):
    runtime = get_runtime()
    _ensure_grantable(principal, body.permissions)
    role = runtime.resolver.update_role_permissions(name, body.permissions)
    return Envelope(status="ok", data=_role_to_response(role))


@api_router.delete("/roles/{name}", response_model=Envelope)
async def delete_role(
    name: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("update:roles")),
):
    runtime = get_runtime()
    runtime.resolver.delete_role(name)
    return Envelope(status="ok", data={"deleted": name})


@api_router.put("/users/{user_id}/roles", response_model=Envelope)
async def update_user_roles(
    body: UserRolesRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("update:users")),
):
    runtime = get_runtime()
    user = await runtime.auth.update_user_roles(
        user_id, body.roles, actor_id=principal.user_id, actor_roles=principal.roles
    )
    return Envelope(status="ok", data=_user_to_response(user))


@api_router.post("/users/{user_id}/deactivate", response_model=Envelope)
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(require_permissions("update:users")),
):
    runtime = get_runtime()
    user = await runtime.auth.deactivate_user(user_id, actor_id=principal.user_id)
    return Envelope(status="ok", data=_user_to_response(user))

