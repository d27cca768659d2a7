from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from trustgate.storage.models import ApiKey, Role, Session, User


class CredentialStore(Protocol):
    """Users, roles, API keys and sessions.

    Lookups raise ``NotFound`` for missing records; any backend failure is
    raised as ``StoreUnavailable``.
    """

    def find_user_by_id(self, user_id: str) -> User: ...

    def find_user_by_email(self, email: str) -> User: ...

    def find_api_key_by_secret(self, secret: str) -> ApiKey: ...

    def find_role_by_name(self, name: str) -> Role: ...

    def list_users_with_role(self, name: str) -> List[User]: ...

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        roles: Optional[Iterable[str]] = None,
        is_active: bool = True,
    ) -> User: ...

    def update_user_roles(self, user_id: str, roles: Iterable[str]) -> User: ...

    def set_user_active(self, user_id: str, is_active: bool) -> User: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def list_roles(self) -> List[Role]: ...

    def save_role(self, role: Role) -> Role: ...

    def delete_role(self, name: str) -> None: ...

    def create_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def get_api_key(self, key_id: str) -> ApiKey: ...

    def save_api_key(self, api_key: ApiKey) -> ApiKey: ...

    def list_api_keys(self, user_id: str) -> List[ApiKey]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Session: ...

    def update_session_refresh_id(
        self, session_id: str, refresh_token_id: str, expires_at: Optional[datetime] = None
    ) -> None: ...

    def deactivate_session(self, session_id: str) -> None: ...

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]: ...

    def ping(self) -> bool: ...


class CounterStore(Protocol):
    """Shared atomic counter and blacklist store (Redis or in-process)."""

    async def get_multi(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def incr_with_ttl(self, key: str, ttl_seconds: int) -> int: ...

    async def set_if_absent_with_ttl(self, key: str, value: str, ttl_seconds: int) -> bool: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl_seconds: int
    ) -> bool: ...

    async def delete(self, key: str) -> None: ...

    async def reserve_rate_limit(
        self,
        window_keys: Sequence[str],
        window_ttls: Sequence[int],
        limits: Sequence[int],
        concurrent_key: str,
        max_concurrent: int,
        concurrent_ttl: int = 3600,
    ) -> Tuple[bool, List[int]]: ...

    async def release_concurrency(self, key: str) -> int: ...

    async def record_usage(
        self,
        key: str,
        response_time_ms: float,
        is_error: bool,
        *,
        now_iso: str,
        day_field: str,
        month_field: str,
    ) -> int: ...

    async def get_hash(self, key: str) -> Dict[str, str]: ...

    async def ping(self) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...
