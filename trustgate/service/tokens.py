from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

from trustgate.config import Settings
from trustgate.logging import fingerprint, get_logger, log_security_event
from trustgate.service.errors import (
    ConcurrentRotationLost,
    TokenExpired,
    TokenInvalidSignature,
    TokenMalformed,
    TokenReuseDetected,
    TokenRevoked,
    UserInactive,
    UserNotFound,
)
from trustgate.storage.errors import NotFound
from trustgate.storage.interfaces import CounterStore, CredentialStore
from trustgate.storage.models import Session, TokenClaims, User

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("iss", "aud", "sub", "iat", "exp", "jti", "sid", "type")


@dataclass
class RotatedTokens:
    user_id: str
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime


def _to_datetime(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TokenService:
    """Issues, validates, rotates and revokes access and refresh tokens.

    Access tokens are stateless: a valid signature, an unexpired ``exp`` and an
    absent blacklist entry are enough. Refresh tokens are stateful: the ``jti``
    must equal the session's current refresh pointer in the counter store, and
    rotation swaps that pointer with compare-and-swap so only one of two
    concurrent rotations can win.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: CounterStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._leeway = settings.clock_skew_leeway_seconds
        self.logger = logger

    def _now(self) -> int:
        return int(self._clock())

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    @staticmethod
    def _blacklist_key(jti: str) -> str:
        return f"blacklist:{jti}"

    @staticmethod
    def _session_blacklist_key(session_id: str) -> str:
        return f"blacklist:session:{session_id}"

    @staticmethod
    def _refresh_pointer_key(session_id: str) -> str:
        return f"session:{session_id}:refresh_jti"

    @staticmethod
    def _new_jti() -> str:
        return secrets.token_hex(16)

    # JWT encoding

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, key: str) -> str:
        digest = hmac.new(key.encode(), signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any], key: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, key)}"

    def _decode_jwt(
        self,
        token: str,
        key: str,
        *,
        expected_type: str,
        verify_exp: bool = True,
    ) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise TokenMalformed("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenMalformed("malformed token") from None
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            raise TokenMalformed("malformed token") from None
        if not isinstance(header, dict) or not isinstance(payload, dict):
            raise TokenMalformed("malformed token")
        # Reject anything but HS256 to prevent algorithm confusion
        if header.get("alg") != "HS256":
            self.logger.warning("jwt_invalid_algorithm", alg=str(header.get("alg")))
            raise TokenMalformed("malformed token")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", key)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise TokenInvalidSignature("invalid token signature")

        if any(payload.get(claim) in (None, "") for claim in _REQUIRED_CLAIMS):
            raise TokenMalformed("malformed token")
        if payload["iss"] != self.settings.jwt_issuer:
            raise TokenMalformed("token claims rejected")
        if payload["aud"] != self.settings.jwt_audience:
            raise TokenMalformed("token claims rejected")
        if payload["type"] != expected_type:
            raise TokenMalformed("unexpected token type")
        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (TypeError, ValueError):
            raise TokenMalformed("malformed token") from None
        if verify_exp and exp_ts <= self._now() - self._leeway:
            raise TokenExpired("token expired")
        return payload

    def _mint(
        self,
        user: User,
        session_id: str,
        *,
        token_type: str,
        ttl_seconds: int,
        scopes: Iterable[str] = (),
        jti: Optional[str] = None,
    ) -> Tuple[str, str, int]:
        now = self._now()
        exp = now + ttl_seconds
        jti = jti or self._new_jti()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "iat": now,
            "exp": exp,
            "jti": jti,
            "sid": session_id,
            "type": token_type,
            "roles": sorted(user.roles),
            "scopes": sorted(set(scopes)),
        }
        key = (
            self.settings.jwt_access_secret
            if token_type == "access"
            else self.settings.jwt_refresh_secret
        )
        return self._encode_jwt(payload, key), jti, exp

    def _load_user(self, user_id: str) -> User:
        try:
            return self.store.find_user_by_id(user_id)
        except NotFound:
            raise UserNotFound("user not found") from None

    def _ensure_token_user(self, user_id: str) -> User:
        try:
            user = self.store.find_user_by_id(user_id)
        except NotFound:
            raise TokenRevoked("token revoked") from None
        if not user.is_active:
            raise UserInactive("user is inactive")
        return user

    # issuing

    def issue_access_token(
        self, user_id: str, scopes: Iterable[str], session_id: str
    ) -> Tuple[str, datetime]:
        user = self._load_user(user_id)
        if not user.is_active:
            raise UserInactive("user is inactive")
        token, _, exp = self._mint(
            user,
            session_id,
            token_type="access",
            ttl_seconds=self.access_ttl_seconds,
            scopes=scopes,
        )
        return token, _to_datetime(exp)

    async def issue_refresh_token(self, user_id: str, session_id: str) -> Tuple[str, datetime]:
        user = self._load_user(user_id)
        if not user.is_active:
            raise UserInactive("user is inactive")
        jti = self._new_jti()
        await self.cache.set_with_ttl(
            self._refresh_pointer_key(session_id), jti, self.refresh_ttl_seconds
        )
        token, _, exp = self._mint(
            user,
            session_id,
            token_type="refresh",
            ttl_seconds=self.refresh_ttl_seconds,
            jti=jti,
        )
        self.store.update_session_refresh_id(session_id, jti, _to_datetime(exp))
        return token, _to_datetime(exp)

    # validation

    async def validate_access_token(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(
            token, self.settings.jwt_access_secret, expected_type="access"
        )
        claims = TokenClaims.from_payload(payload)
        jti_revoked, session_revoked = await self.cache.get_multi(
            [
                self._blacklist_key(claims.token_id),
                self._session_blacklist_key(claims.session_id),
            ]
        )
        if jti_revoked or session_revoked:
            raise TokenRevoked("token revoked")
        self._ensure_token_user(claims.subject)
        return claims

    async def validate_refresh_token(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(
            token, self.settings.jwt_refresh_secret, expected_type="refresh"
        )
        claims = TokenClaims.from_payload(payload)
        session_revoked, current_jti, jti_revoked = await self.cache.get_multi(
            [
                self._session_blacklist_key(claims.session_id),
                self._refresh_pointer_key(claims.session_id),
                self._blacklist_key(claims.token_id),
            ]
        )
        if session_revoked or current_jti is None:
            raise TokenRevoked("token revoked")
        # Checked before the per-token blacklist: a rotated-out token is a replay
        if not hmac.compare_digest(current_jti.encode(), claims.token_id.encode()):
            await self._handle_reuse(claims)
            raise TokenReuseDetected("refresh token reuse detected")
        if jti_revoked:
            raise TokenRevoked("token revoked")
        self._ensure_token_user(claims.subject)
        return claims

    async def _handle_reuse(self, claims: TokenClaims) -> None:
        log_security_event(
            "refresh_token_reuse_detected",
            severity="critical",
            user_id=claims.subject,
            session_id=claims.session_id,
            jti_fingerprint=fingerprint(claims.token_id),
        )
        await self.revoke_session(claims.session_id, reason="refresh_token_reuse")

    # rotation and revocation

    async def rotate_refresh_token(self, old_token: str) -> RotatedTokens:
        claims = await self.validate_refresh_token(old_token)
        user = self._ensure_token_user(claims.subject)
        new_jti = self._new_jti()
        swapped = await self.cache.compare_and_swap(
            self._refresh_pointer_key(claims.session_id),
            claims.token_id,
            new_jti,
            self.refresh_ttl_seconds,
        )
        if not swapped:
            log_security_event(
                "refresh_rotation_conflict",
                severity="warning",
                user_id=claims.subject,
                session_id=claims.session_id,
            )
            raise ConcurrentRotationLost(
                "refresh token was rotated by a concurrent request"
            )
        await self._blacklist(claims.token_id, claims.expires_at)
        refresh_token, _, refresh_exp = self._mint(
            user,
            claims.session_id,
            token_type="refresh",
            ttl_seconds=self.refresh_ttl_seconds,
            jti=new_jti,
        )
        self.store.update_session_refresh_id(
            claims.session_id, new_jti, _to_datetime(refresh_exp)
        )
        access_token, access_expires_at = self.issue_access_token(
            user.id, claims.scopes, claims.session_id
        )
        self.logger.info(
            "refresh_token_rotated", user_id=user.id, session_id=claims.session_id
        )
        return RotatedTokens(
            user_id=user.id,
            session_id=claims.session_id,
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=_to_datetime(refresh_exp),
        )

    async def _blacklist(self, jti: str, expires_at: int) -> bool:
        # Held through the leeway window, during which the token still decodes
        ttl = int(expires_at) + self._leeway - self._now()
        if ttl <= 0:
            return False
        await self.cache.set_if_absent_with_ttl(self._blacklist_key(jti), "1", ttl)
        return True

    def _decode_any(self, token: str) -> dict[str, Any]:
        try:
            return self._decode_jwt(
                token,
                self.settings.jwt_access_secret,
                expected_type="access",
                verify_exp=False,
            )
        except TokenInvalidSignature:
            return self._decode_jwt(
                token,
                self.settings.jwt_refresh_secret,
                expected_type="refresh",
                verify_exp=False,
            )

    def session_id_of(self, token: Optional[str], *, token_type: str = "access") -> Optional[str]:
        """Session id carried by a correctly signed token, expired or not.

        Identifies the session only; callers still validate the token itself.
        """
        if not token:
            return None
        key = (
            self.settings.jwt_access_secret
            if token_type == "access"
            else self.settings.jwt_refresh_secret
        )
        try:
            payload = self._decode_jwt(token, key, expected_type=token_type, verify_exp=False)
        except (TokenMalformed, TokenInvalidSignature):
            return None
        return payload["sid"]

    async def revoke(self, token: str) -> bool:
        """Blacklist a token's jti for the rest of its natural lifetime.

        Returns False when the token had already expired and needs no entry.
        """
        payload = self._decode_any(token)
        revoked = await self._blacklist(payload["jti"], int(payload["exp"]))
        if revoked:
            self.logger.info(
                "token_revoked",
                token_type=payload["type"],
                session_id=payload["sid"],
                jti_fingerprint=fingerprint(payload["jti"]),
            )
        return revoked

    async def revoke_session(self, session_id: str, *, reason: str = "revoked") -> None:
        """Blacklist a session so every token descended from it is rejected."""
        await self.cache.set_with_ttl(
            self._session_blacklist_key(session_id), reason, self.refresh_ttl_seconds
        )
        await self.cache.delete(self._refresh_pointer_key(session_id))
        self.store.deactivate_session(session_id)
        log_security_event("session_revoked", session_id=session_id, reason=reason)

    async def logout(self, access_token: str) -> TokenClaims:
        claims = await self.validate_access_token(access_token)
        await self.revoke(access_token)
        await self.revoke_session(claims.session_id, reason="logout")
        log_security_event(
            "logout", user_id=claims.subject, session_id=claims.session_id
        )
        return claims

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        *,
        reason: str = "revoke_all",
    ) -> int:
        """Revoke every active session of a user, optionally keeping one.

        Returns:
            Number of sessions revoked
        """
        revoked = 0
        for session in self.store.list_user_sessions(user_id):
            if except_session_id and session.id == except_session_id:
                continue
            await self.revoke_session(session.id, reason=reason)
            revoked += 1
        return revoked

    def get_active_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_user_sessions(user_id)
