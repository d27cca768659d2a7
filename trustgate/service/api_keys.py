from __future__ import annotations

import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from trustgate.config import Settings
from trustgate.logging import fingerprint, get_logger, log_security_event
from trustgate.service.errors import (
    ApiKeyRevoked,
    AuthenticationError,
    NotFoundError,
    PermissionDenied,
    UserInactive,
    UserNotFound,
    ValidationError,
)
from trustgate.service.rbac import PermissionResolver, permissions_allow, validate_permission_string
from trustgate.storage.errors import NotFound
from trustgate.storage.interfaces import CredentialStore
from trustgate.storage.memory import hash_api_key_secret
from trustgate.storage.models import RATE_LIMIT_TIERS, ApiKey

logger = get_logger(__name__)

MAX_KEY_NAME_LENGTH = 100
MAX_EXPIRY_DAYS = 365


class ApiKeyService:
    """Creates, authenticates and revokes API keys.

    The secret is returned once at creation; only its sha256 digest is stored
    and only a short fingerprint ever reaches the logs.
    """

    def __init__(
        self,
        store: CredentialStore,
        resolver: PermissionResolver,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.settings = settings
        self.prefix = settings.api_key_prefix
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _check_scopes(self, owner_roles: Iterable[str], scopes: Iterable[str]) -> List[str]:
        normalized = sorted({validate_permission_string(s) for s in scopes})
        granted = self.resolver.resolve_permissions(owner_roles)
        if not permissions_allow(granted, normalized):
            raise PermissionDenied("requested scopes exceed the owner's permissions")
        return normalized

    def create_api_key(
        self,
        user_id: str,
        name: str,
        scopes: Optional[Iterable[str]] = None,
        tier: str = "free",
        expires_in_days: Optional[int] = None,
    ) -> Tuple[ApiKey, str]:
        name = (name or "").strip()
        if not name or len(name) > MAX_KEY_NAME_LENGTH:
            raise ValidationError("invalid api key name", detail={"field": "name"})
        if tier not in RATE_LIMIT_TIERS:
            raise ValidationError("unknown rate limit tier", detail={"tier": tier})
        if expires_in_days is not None and not 0 < expires_in_days <= MAX_EXPIRY_DAYS:
            raise ValidationError(
                "expires_in_days out of range", detail={"field": "expires_in_days"}
            )
        try:
            owner = self.store.find_user_by_id(user_id)
        except NotFound:
            raise UserNotFound("user not found") from None
        if not owner.is_active:
            raise UserInactive("account is inactive")
        checked_scopes = self._check_scopes(owner.roles, scopes or [])

        secret = f"{self.prefix}_{secrets.token_hex(16)}"
        now = self._now()
        record = ApiKey(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            secret_hash=hash_api_key_secret(secret),
            prefix=secret[: len(self.prefix) + 9],
            scopes=checked_scopes,
            tier=tier,
            created_at=now,
            expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        )
        saved = self.store.create_api_key(record)
        log_security_event(
            "api_key_created",
            user_id=user_id,
            api_key_id=saved.id,
            key_fingerprint=fingerprint(secret),
            tier=tier,
            scopes=checked_scopes,
        )
        return saved, secret

    def authenticate(self, secret: str) -> ApiKey:
        if not secret:
            raise AuthenticationError("invalid api key")
        try:
            api_key = self.store.find_api_key_by_secret(secret)
        except NotFound:
            logger.info("api_key_unknown", key_fingerprint=fingerprint(secret))
            raise AuthenticationError("invalid api key") from None
        now = self._now()
        if not api_key.is_usable(now):
            logger.info(
                "api_key_rejected",
                api_key_id=api_key.id,
                key_fingerprint=fingerprint(secret),
            )
            raise ApiKeyRevoked("api key revoked or expired")
        try:
            owner = self.store.find_user_by_id(api_key.user_id)
        except NotFound:
            raise ApiKeyRevoked("api key revoked or expired") from None
        if not owner.is_active:
            raise UserInactive("account is inactive")
        api_key.last_used_at = now
        return self.store.save_api_key(api_key)

    def _owned_key(self, key_id: str, actor_id: str, is_admin: bool) -> ApiKey:
        try:
            api_key = self.store.get_api_key(key_id)
        except NotFound:
            raise NotFoundError("api key not found") from None
        if api_key.user_id != actor_id and not is_admin:
            # Another user's key looks the same as a missing one
            raise NotFoundError("api key not found")
        return api_key

    def get_api_key(self, key_id: str, *, actor_id: str, is_admin: bool = False) -> ApiKey:
        return self._owned_key(key_id, actor_id, is_admin)

    def revoke_api_key(self, key_id: str, *, actor_id: str, is_admin: bool = False) -> ApiKey:
        api_key = self._owned_key(key_id, actor_id, is_admin)
        if not api_key.is_active:
            return api_key
        api_key.is_active = False
        saved = self.store.save_api_key(api_key)
        log_security_event(
            "api_key_revoked",
            api_key_id=key_id,
            owner_id=api_key.user_id,
            actor_id=actor_id,
        )
        return saved

    def update_scopes(
        self,
        key_id: str,
        scopes: Iterable[str],
        *,
        actor_id: str,
        is_admin: bool = False,
    ) -> ApiKey:
        api_key = self._owned_key(key_id, actor_id, is_admin)
        try:
            owner = self.store.find_user_by_id(api_key.user_id)
        except NotFound:
            raise UserNotFound("user not found") from None
        api_key.scopes = self._check_scopes(owner.roles, scopes)
        saved = self.store.save_api_key(api_key)
        log_security_event(
            "api_key_scopes_updated",
            api_key_id=key_id,
            actor_id=actor_id,
            scopes=saved.scopes,
        )
        return saved

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        return self.store.list_api_keys(user_id)

    def extract_api_key(
        self, authorization: Optional[str], x_api_key: Optional[str]
    ) -> Optional[str]:
        """Pull a key secret from ``X-API-Key`` or a ``Bearer {prefix}_...`` header."""
        if x_api_key and x_api_key.strip():
            return x_api_key.strip()
        if authorization:
            scheme, _, value = authorization.partition(" ")
            value = value.strip()
            if scheme.lower() == "bearer" and value.startswith(f"{self.prefix}_"):
                return value
        return None
