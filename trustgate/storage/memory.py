from __future__ import annotations

import copy
import hashlib
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from trustgate.logging import get_logger
from trustgate.storage.errors import ConstraintViolation, NotFound
from trustgate.storage.models import (
    SYSTEM_ROLE_PERMISSIONS,
    ApiKey,
    Role,
    Session,
    User,
)


def hash_api_key_secret(secret: str) -> str:
    """Digest under which API key secrets are indexed; the secret is never kept."""
    return hashlib.sha256(secret.encode()).hexdigest()


class MemoryStore:
    """In-memory credential store for users, roles, API keys and sessions.

    Records are copied on the way in and out so callers never mutate stored
    state without going through a store method.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so compound operations can nest lookups
        self._data_lock = threading.RLock()
        self._seed_system_roles()

    def _seed_system_roles(self) -> None:
        for name, permissions in SYSTEM_ROLE_PERMISSIONS.items():
            self.roles[name] = Role(name=name, permissions=permissions, is_system=True)

    def ping(self) -> bool:
        return True

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                roles=set(roles) if roles is not None else {"user"},
                is_active=is_active,
            )
            self.users[user.id] = user
            return copy.deepcopy(user)

    def find_user_by_id(self, user_id: str) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            return copy.deepcopy(user)

    def find_user_by_email(self, email: str) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            if not user:
                raise NotFound("user not found")
            return copy.deepcopy(user)

    def list_users_with_role(self, name: str) -> List[User]:
        with self._data_lock:
            return [copy.deepcopy(u) for u in self.users.values() if name in u.roles]

    def update_user_roles(self, user_id: str, roles: Iterable[str]) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            user.roles = set(roles)
            return copy.deepcopy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> User:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            user.is_active = is_active
            return copy.deepcopy(user)

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise NotFound("user not found", {"user_id": user_id})
            user.password_hash = password_hash

    # roles
    def find_role_by_name(self, name: str) -> Role:
        with self._data_lock:
            role = self.roles.get(name)
            if not role:
                raise NotFound("role not found", {"role": name})
            return copy.deepcopy(role)

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return sorted((copy.deepcopy(r) for r in self.roles.values()), key=lambda r: r.name)

    def save_role(self, role: Role) -> Role:
        with self._data_lock:
            self.roles[role.name] = copy.deepcopy(role)
            return copy.deepcopy(role)

    def delete_role(self, name: str) -> None:
        with self._data_lock:
            if self.roles.pop(name, None) is None:
                raise NotFound("role not found", {"role": name})

    # api keys
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if api_key.user_id not in self.users:
                raise ConstraintViolation("api key owner missing", {"user_id": api_key.user_id})
            if any(k.secret_hash == api_key.secret_hash for k in self.api_keys.values()):
                raise ConstraintViolation("api key already exists")
            self.api_keys[api_key.id] = copy.deepcopy(api_key)
            return copy.deepcopy(api_key)

    def find_api_key_by_secret(self, secret: str) -> ApiKey:
        digest = hash_api_key_secret(secret)
        with self._data_lock:
            match = next((k for k in self.api_keys.values() if k.secret_hash == digest), None)
            if not match:
                raise NotFound("api key not found")
            return copy.deepcopy(match)

    def get_api_key(self, key_id: str) -> ApiKey:
        with self._data_lock:
            api_key = self.api_keys.get(key_id)
            if not api_key:
                raise NotFound("api key not found", {"api_key_id": key_id})
            return copy.deepcopy(api_key)

    def save_api_key(self, api_key: ApiKey) -> ApiKey:
        with self._data_lock:
            if api_key.id not in self.api_keys:
                raise NotFound("api key not found", {"api_key_id": api_key.id})
            self.api_keys[api_key.id] = copy.deepcopy(api_key)
            return copy.deepcopy(api_key)

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._data_lock:
            keys = [copy.deepcopy(k) for k in self.api_keys.values() if k.user_id == user_id]
        return sorted(keys, key=lambda k: k.created_at, reverse=True)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            return copy.deepcopy(sess)

    def get_session(self, session_id: str) -> Session:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                raise NotFound("session not found", {"session_id": session_id})
            return copy.deepcopy(sess)

    def update_session_refresh_id(
        self, session_id: str, refresh_token_id: str, expires_at: Optional[datetime] = None
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                raise NotFound("session not found", {"session_id": session_id})
            sess.refresh_token_id = refresh_token_id
            if expires_at is not None:
                sess.expires_at = expires_at

    def deactivate_session(self, session_id: str) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.is_active = False
            sess.refresh_token_id = None

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        now = datetime.now(timezone.utc)
        with self._data_lock:
            results = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.user_id == user_id
                and (not active_only or (s.is_active and s.expires_at > now))
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)
