from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Callable, Iterable, Optional, Tuple

from trustgate.config import Settings
from trustgate.logging import get_logger, log_security_event
from trustgate.service.errors import CSRFTokenExpired, CSRFTokenMismatch, CSRFTokenMissing

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def _binding_digest(binding: str) -> str:
    return hashlib.sha256(binding.encode()).hexdigest()[:32]


class CSRFProtection:
    """Double-submit CSRF tokens that carry their own expiry and signature.

    A token is ``b64("{binding_digest}:{expiry}:{mac}")`` where ``mac`` is
    HMAC-SHA256 over the first two fields. Validation needs no server state:
    a forged or edited token fails the MAC, an old one fails the expiry.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        trusted_origins: Optional[Iterable[str]] = None,
    ) -> None:
        self.settings = settings
        self._secret = settings.csrf_secret.encode()
        self.ttl_seconds = settings.csrf_token_ttl_seconds
        self.trusted_origins = frozenset(
            trusted_origins if trusted_origins is not None else settings.csrf_trusted_origins
        )
        self._clock = clock

    def _mac(self, digest: str, expiry: int) -> str:
        return hmac.new(self._secret, f"{digest}:{expiry}".encode(), hashlib.sha256).hexdigest()

    def issue_token(self, binding: Optional[str] = None) -> Tuple[str, int]:
        """Return ``(token, expires_at)`` bound to a session id or an anonymous id."""
        if not binding:
            binding = f"anon-{secrets.token_hex(16)}"
        expiry = int(self._clock()) + self.ttl_seconds
        digest = _binding_digest(binding)
        raw = f"{digest}:{expiry}:{self._mac(digest, expiry)}"
        token = base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")
        return token, expiry

    def rotate_token(self, binding: Optional[str] = None) -> Tuple[str, int]:
        token, expiry = self.issue_token(binding)
        logger.info("csrf_token_rotated", expires_at=expiry)
        return token, expiry

    @staticmethod
    def requires_validation(method: str) -> bool:
        return method.upper() not in SAFE_METHODS

    def is_trusted_origin(self, origin: Optional[str]) -> bool:
        # Exact string match only; no prefix or substring matching
        return bool(origin) and origin in self.trusted_origins

    def _parse(self, token: str) -> Optional[Tuple[str, int]]:
        padding = "=" * ((4 - len(token) % 4) % 4)
        try:
            raw = base64.urlsafe_b64decode(token + padding).decode()
        except (binascii.Error, ValueError):
            return None
        parts = raw.split(":")
        if len(parts) != 3:
            return None
        digest, expiry_raw, mac = parts
        try:
            expiry = int(expiry_raw)
        except ValueError:
            return None
        if not hmac.compare_digest(mac.encode(), self._mac(digest, expiry).encode()):
            return None
        return digest, expiry

    def current_expiry(
        self, token: Optional[str], *, binding: Optional[str] = None
    ) -> Optional[int]:
        """Expiry of a well-formed, unexpired token (bound to ``binding`` if given), else None."""
        if not token:
            return None
        parsed = self._parse(token)
        if parsed is None or parsed[1] <= int(self._clock()):
            return None
        if binding is not None and not hmac.compare_digest(
            parsed[0].encode(), _binding_digest(binding).encode()
        ):
            return None
        return parsed[1]

    def _reject(self, exc_type, message: str, origin: Optional[str]):
        log_security_event(
            "csrf_rejected", severity="warning", reason=exc_type.kind, origin=origin
        )
        return exc_type(message)

    def validate(
        self,
        cookie_value: Optional[str],
        echoed_value: Optional[str],
        origin: Optional[str] = None,
        *,
        binding: Optional[str] = None,
    ) -> bool:
        if self.is_trusted_origin(origin):
            logger.debug("csrf_exempt_trusted_origin", origin=origin)
            return True
        if not cookie_value or not echoed_value:
            raise self._reject(CSRFTokenMissing, "missing CSRF token", origin)
        if not hmac.compare_digest(cookie_value.encode(), echoed_value.encode()):
            raise self._reject(CSRFTokenMismatch, "invalid CSRF token", origin)
        parsed = self._parse(cookie_value)
        if parsed is None:
            raise self._reject(CSRFTokenMismatch, "invalid CSRF token", origin)
        digest, expiry = parsed
        if expiry <= int(self._clock()):
            raise self._reject(CSRFTokenExpired, "CSRF token expired", origin)
        if binding is not None and not hmac.compare_digest(
            digest.encode(), _binding_digest(binding).encode()
        ):
            raise self._reject(CSRFTokenMismatch, "invalid CSRF token", origin)
        return True
