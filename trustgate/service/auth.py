from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from trustgate.config import Settings
from trustgate.logging import fingerprint, get_logger, log_security_event
from trustgate.service.api_keys import ApiKeyService
from trustgate.service.csrf import CSRFProtection
from trustgate.service.errors import (
    AuthenticationError,
    ConflictError,
    InvalidCredentials,
    PermissionDenied,
    UserInactive,
    UserNotFound,
    ValidationError,
)
from trustgate.service.passwords import PasswordService
from trustgate.service.rbac import PermissionResolver, permissions_allow
from trustgate.service.tokens import TokenService
from trustgate.storage.errors import ConstraintViolation, NotFound
from trustgate.storage.interfaces import CredentialStore
from trustgate.storage.models import TokenClaims, User

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 256


@dataclass
class AuthContext:
    user_id: str
    roles: List[str]
    scopes: List[str] = field(default_factory=list)
    session_id: Optional[str] = None
    token_id: Optional[str] = None
    api_key_id: Optional[str] = None
    tier: Optional[str] = None

    @property
    def is_api_key(self) -> bool:
        return self.api_key_id is not None


@dataclass
class IssuedTokens:
    user_id: str
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    csrf_token: str
    csrf_expires_at: int


def _validate_password(password: str) -> None:
    if not isinstance(password, str) or not (
        MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH
    ):
        raise ValidationError(
            f"password must be between {MIN_PASSWORD_LENGTH} and {MAX_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class AuthService:
    """Registration, login, refresh and account-level revocation.

    Composes the token, password, CSRF, API key and RBAC services; it owns no
    state of its own.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        tokens: TokenService,
        passwords: PasswordService,
        csrf: CSRFProtection,
        resolver: PermissionResolver,
        api_keys: ApiKeyService,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.passwords = passwords
        self.csrf = csrf
        self.resolver = resolver
        self.api_keys = api_keys
        self.logger = logger

    def _load_user(self, user_id: str) -> User:
        try:
            return self.store.find_user_by_id(user_id)
        except NotFound:
            raise UserNotFound("user not found") from None

    async def _issue_for_session(self, user: User, session_id: str) -> IssuedTokens:
        refresh_token, refresh_exp = await self.tokens.issue_refresh_token(user.id, session_id)
        access_token, access_exp = self.tokens.issue_access_token(user.id, [], session_id)
        csrf_token, csrf_exp = self.csrf.rotate_token(session_id)
        return IssuedTokens(
            user_id=user.id,
            session_id=session_id,
            access_token=access_token,
            access_expires_at=access_exp,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_exp,
            csrf_token=csrf_token,
            csrf_expires_at=csrf_exp,
        )

    def register(self, email: str, password: str) -> User:
        email = (email or "").strip().lower()
        if not _EMAIL_RE.match(email):
            raise ValidationError("invalid email address", detail={"field": "email"})
        _validate_password(password)
        try:
            user = self.store.create_user(
                email, self.passwords.hash_password(password), roles={"user"}
            )
        except ConstraintViolation:
            raise ConflictError("email already registered") from None
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        email_fp = fingerprint((email or "").strip().lower())
        try:
            user = self.store.find_user_by_email(email or "")
        except NotFound:
            # Same argon2 cost as a real account so timing reveals nothing
            self.passwords.verify_dummy(password or "")
            log_security_event(
                "login_failed", severity="warning", reason="unknown_email",
                email_fingerprint=email_fp, ip_address=ip_address,
            )
            raise InvalidCredentials("invalid email or password") from None
        if not self.passwords.verify_password(user.password_hash, password or ""):
            log_security_event(
                "login_failed", severity="warning", reason="bad_password",
                user_id=user.id, ip_address=ip_address,
            )
            raise InvalidCredentials("invalid email or password")
        if not user.is_active:
            log_security_event(
                "login_failed", severity="warning", reason="inactive", user_id=user.id
            )
            raise UserInactive("account is inactive")
        if self.passwords.needs_rehash(user.password_hash):
            self.store.update_password_hash(user.id, self.passwords.hash_password(password))
            self.logger.info("password_rehashed", user_id=user.id)

        session = self.store.create_session(
            user.id,
            self.settings.refresh_token_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        issued = await self._issue_for_session(user, session.id)
        log_security_event(
            "login_succeeded", user_id=user.id, session_id=session.id, ip_address=ip_address
        )
        return issued

    async def refresh(self, refresh_token: str) -> IssuedTokens:
        if not refresh_token:
            raise AuthenticationError("missing refresh token")
        rotated = await self.tokens.rotate_refresh_token(refresh_token)
        csrf_token, csrf_exp = self.csrf.rotate_token(rotated.session_id)
        return IssuedTokens(
            user_id=rotated.user_id,
            session_id=rotated.session_id,
            access_token=rotated.access_token,
            access_expires_at=rotated.access_expires_at,
            refresh_token=rotated.refresh_token,
            refresh_expires_at=rotated.refresh_expires_at,
            csrf_token=csrf_token,
            csrf_expires_at=csrf_exp,
        )

    async def logout(self, access_token: str) -> TokenClaims:
        return await self.tokens.logout(access_token)

    async def authenticate_bearer(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = await self.tokens.validate_access_token(token)
        return AuthContext(
            user_id=claims.subject,
            roles=claims.roles,
            scopes=claims.scopes,
            session_id=claims.session_id,
            token_id=claims.token_id,
        )

    def authenticate_api_key(self, secret: str) -> AuthContext:
        api_key = self.api_keys.authenticate(secret)
        owner = self._load_user(api_key.user_id)
        return AuthContext(
            user_id=owner.id,
            roles=sorted(owner.roles),
            scopes=list(api_key.scopes),
            api_key_id=api_key.id,
            tier=api_key.tier,
        )

    def authorize(self, ctx: AuthContext, required: Iterable[str]) -> None:
        """Roles must grant ``required``; an API key must also be scoped for it."""
        required = list(required)
        self.resolver.require(ctx.roles, required)
        if ctx.is_api_key and not permissions_allow(ctx.scopes, required):
            self.logger.info(
                "api_key_scope_denied", api_key_id=ctx.api_key_id, required=sorted(required)
            )
            raise PermissionDenied("insufficient permissions")

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        user = self._load_user(user_id)
        if not self.passwords.verify_password(user.password_hash, current_password or ""):
            log_security_event(
                "password_change_failed", severity="warning", user_id=user_id
            )
            raise InvalidCredentials("current password is incorrect")
        _validate_password(new_password)
        self.store.update_password_hash(user_id, self.passwords.hash_password(new_password))
        revoked = await self.tokens.revoke_all_user_sessions(user_id, reason="password_change")
        log_security_event("password_changed", user_id=user_id, sessions_revoked=revoked)
        return revoked

    async def deactivate_user(self, user_id: str, *, actor_id: str) -> User:
        try:
            user = self.store.set_user_active(user_id, False)
        except NotFound:
            raise UserNotFound("user not found") from None
        revoked = await self.tokens.revoke_all_user_sessions(user_id, reason="deactivated")
        log_security_event(
            "user_deactivated", severity="warning", user_id=user_id,
            actor_id=actor_id, sessions_revoked=revoked,
        )
        return user

    async def update_user_roles(
        self,
        user_id: str,
        roles: Iterable[str],
        *,
        actor_id: str,
        actor_roles: Iterable[str],
    ) -> User:
        """Replace a user's roles and end their sessions.

        The forced re-login issues tokens carrying the new roles and rotates
        the CSRF token. An actor can only hand out permissions it holds.
        """
        new_roles = sorted(set(roles))
        if not new_roles:
            raise ValidationError("at least one role is required", detail={"field": "roles"})
        for name in new_roles:
            try:
                self.store.find_role_by_name(name)
            except NotFound:
                raise ValidationError("unknown role", detail={"role": name}) from None
        actor_permissions = self.resolver.resolve_permissions(actor_roles)
        target_permissions = self.resolver.resolve_permissions(new_roles)
        if not permissions_allow(actor_permissions, target_permissions):
            log_security_event(
                "role_escalation_denied", severity="warning",
                actor_id=actor_id, user_id=user_id, roles=new_roles,
            )
            raise PermissionDenied("insufficient permissions")
        try:
            user = self.store.update_user_roles(user_id, new_roles)
        except NotFound:
            raise UserNotFound("user not found") from None
        revoked = await self.tokens.revoke_all_user_sessions(user_id, reason="role_change")
        log_security_event(
            "user_roles_updated", user_id=user_id, actor_id=actor_id,
            roles=new_roles, sessions_revoked=revoked,
        )
        return user

    def get_user(self, user_id: str) -> User:
        return self._load_user(user_id)
