from __future__ import annotations

import re
import threading
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from trustgate.logging import get_logger, log_security_event
from trustgate.service.errors import (
    ConflictError,
    ImmutableRole,
    NotFoundError,
    PermissionDenied,
    RoleInUse,
    ValidationError,
)
from trustgate.storage.errors import NotFound
from trustgate.storage.interfaces import CredentialStore
from trustgate.storage.models import SYSTEM_ROLES, Role

logger = get_logger(__name__)

WILDCARD = "*"

_SEGMENT = r"[a-z0-9][a-z0-9_.-]*"
_PERMISSION_RE = re.compile(rf"^(\*|(\*|{_SEGMENT}):(\*|{_SEGMENT}))$")
_ROLE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]{1,63}$")

Permissions = Union[str, Iterable[str]]


def _as_list(required: Permissions) -> List[str]:
    if isinstance(required, str):
        return [required]
    return list(required)


def match_rule(granted: FrozenSet[str], required: str) -> Optional[str]:
    """Return the first precedence rule under which ``granted`` covers ``required``.

    Precedence: exact, ``action:*``, ``*:resource``, then global ``*``.
    """
    if required in granted:
        return "exact"
    action, sep, resource = required.partition(":")
    if sep:
        if f"{action}:{WILDCARD}" in granted:
            return "action_wildcard"
        if f"{WILDCARD}:{resource}" in granted:
            return "resource_wildcard"
    if WILDCARD in granted:
        return "global_wildcard"
    return None


def permissions_allow(granted: Iterable[str], required: Permissions) -> bool:
    """Conjunctive check: every required permission must be matched individually."""
    granted_set = frozenset(granted)
    required_list = _as_list(required)
    if not required_list:
        return True
    return all(match_rule(granted_set, item) is not None for item in required_list)


def validate_permission_string(permission: str) -> str:
    if not isinstance(permission, str) or not _PERMISSION_RE.match(permission):
        raise ValidationError(
            "invalid permission string", detail={"permission": permission}
        )
    return permission


class PermissionResolver:
    """Resolves effective permissions for role sets and answers authorization checks.

    Resolved sets are cached per role-set key. Any role mutation clears the
    whole cache rather than trying to work out which entries it touched.
    """

    def __init__(self, store: CredentialStore) -> None:
        self.store = store
        self._cache: Dict[FrozenSet[str], FrozenSet[str]] = {}
        self._cache_lock = threading.Lock()

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def resolve_permissions(self, role_names: Iterable[str]) -> FrozenSet[str]:
        key = frozenset(role_names)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached
        resolved: set[str] = set()
        for name in sorted(key):
            try:
                role = self.store.find_role_by_name(name)
            except NotFound:
                logger.warning("unknown_role_ignored", role=name)
                continue
            resolved.update(role.permissions)
        result = frozenset(resolved)
        with self._cache_lock:
            self._cache[key] = result
        return result

    def authorize(self, role_names: Iterable[str], required: Permissions) -> bool:
        granted = self.resolve_permissions(role_names)
        return permissions_allow(granted, required)

    def require(self, role_names: Iterable[str], required: Permissions) -> None:
        roles = list(role_names)
        if not self.authorize(roles, required):
            logger.info(
                "authorization_denied",
                roles=sorted(roles),
                required=sorted(_as_list(required)),
            )
            raise PermissionDenied("insufficient permissions")

    # role administration

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def get_role(self, name: str) -> Role:
        try:
            return self.store.find_role_by_name(name)
        except NotFound:
            raise NotFoundError("role not found") from None

    def _reject_system_role(self, name: str, action: str) -> None:
        if name in SYSTEM_ROLES:
            log_security_event(
                "system_role_mutation_rejected", severity="warning", role=name, action=action
            )
            raise ImmutableRole("system roles cannot be modified")

    def create_role(
        self,
        name: str,
        permissions: Iterable[str],
        description: Optional[str] = None,
    ) -> Role:
        self._reject_system_role(name, "create")
        if not _ROLE_NAME_RE.match(name or ""):
            raise ValidationError("invalid role name", detail={"role": name})
        perms = frozenset(validate_permission_string(p) for p in permissions)
        try:
            self.store.find_role_by_name(name)
        except NotFound:
            pass
        else:
            raise ConflictError("role already exists", detail={"role": name})
        role = self.store.save_role(
            Role(name=name, permissions=perms, description=description)
        )
        self.invalidate_cache()
        log_security_event("role_created", role=name, permissions=sorted(perms))
        return role

    def update_role_permissions(self, name: str, permissions: Iterable[str]) -> Role:
        self._reject_system_role(name, "update")
        perms = frozenset(validate_permission_string(p) for p in permissions)
        role = self.get_role(name)
        role.permissions = perms
        role.updated_at = datetime.now(timezone.utc)
        saved = self.store.save_role(role)
        self.invalidate_cache()
        log_security_event("role_updated", role=name, permissions=sorted(perms))
        return saved

    def delete_role(self, name: str) -> None:
        self._reject_system_role(name, "delete")
        self.get_role(name)
        holders = self.store.list_users_with_role(name)
        if holders:
            raise RoleInUse(
                "role is assigned to users", detail={"role": name, "users": len(holders)}
            )
        self.store.delete_role(name)
        self.invalidate_cache()
        log_security_event("role_deleted", role=name)
