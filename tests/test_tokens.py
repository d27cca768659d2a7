"""Unit tests for the token lifecycle manager.

Tests for:
- Access token issue/validate, expiry and clock-skew leeway
- Signature, algorithm and claim checks
- Blacklisting by jti and by session
- Refresh rotation, reuse detection and the concurrent-rotation tie-break
"""

import asyncio
import base64
import json
from unittest.mock import AsyncMock

import pytest

from trustgate.config import Settings
from trustgate.service.errors import (
    ConcurrentRotationLost,
    TokenExpired,
    TokenInvalidSignature,
    TokenMalformed,
    TokenReuseDetected,
    TokenRevoked,
    UserInactive,
)
from trustgate.service.tokens import RotatedTokens, TokenService
from trustgate.storage.errors import StoreUnavailable
from trustgate.storage.memory import MemoryStore
from trustgate.storage.memory_cache import MemoryCache


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="unit-access-secret-0123456789",
        jwt_refresh_secret="unit-refresh-secret-9876543210",
        csrf_secret="unit-csrf-secret",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def tokens(store, cache, settings, clock):
    return TokenService(store, cache, settings, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "not-a-real-hash")


@pytest.fixture
def session(store, user):
    return store.create_session(user.id, 60 * 24 * 7)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestAccessTokens:
    """Issuing and validating access tokens."""

    async def test_issue_and_validate(self, tokens, user, session):
        token, expires_at = tokens.issue_access_token(user.id, ["read:profile"], session.id)

        claims = await tokens.validate_access_token(token)

        assert claims.subject == user.id
        assert claims.session_id == session.id
        assert claims.token_type == "access"
        assert claims.roles == ["user"]
        assert claims.scopes == ["read:profile"]
        assert claims.expires_at - claims.issued_at == 15 * 60
        assert int(expires_at.timestamp()) == claims.expires_at

    async def test_expired_token_rejected(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        clock.advance(20 * 60)

        with pytest.raises(TokenExpired) as exc_info:
            await tokens.validate_access_token(token)
        assert exc_info.value.kind == "expired"

    async def test_clock_skew_leeway_accepts_recent_expiry(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        clock.advance(15 * 60 + 10)

        claims = await tokens.validate_access_token(token)
        assert claims.subject == user.id

    async def test_tampered_signature_rejected(self, tokens, user, session):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        head, sig = token.rsplit(".", 1)
        forged = f"{head}.{'A' if sig[0] != 'A' else 'B'}{sig[1:]}"

        with pytest.raises(TokenInvalidSignature) as exc_info:
            await tokens.validate_access_token(forged)
        assert exc_info.value.kind == "invalid"

    async def test_tampered_payload_rejected(self, tokens, user, session):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        header, payload, sig = token.split(".")
        padded = payload + "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(padded))
        claims["roles"] = ["super_admin"]

        with pytest.raises(TokenInvalidSignature):
            await tokens.validate_access_token(f"{header}.{_b64(claims)}.{sig}")

    async def test_alg_none_rejected(self, tokens, user, session):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        _, payload, _ = token.split(".")
        forged = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(TokenMalformed):
            await tokens.validate_access_token(forged)

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d", "!!!.???.###"])
    async def test_garbage_is_malformed(self, tokens, garbage):
        with pytest.raises(TokenMalformed):
            await tokens.validate_access_token(garbage)

    async def test_refresh_token_is_not_an_access_token(self, tokens, user, session):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        with pytest.raises(TokenInvalidSignature):
            await tokens.validate_access_token(refresh)

    async def test_foreign_issuer_rejected(self, store, cache, settings, clock, user, session):
        foreign = TokenService(
            store, cache, settings.model_copy(update={"jwt_issuer": "someone-else"}), clock=clock
        )
        token, _ = foreign.issue_access_token(user.id, [], session.id)
        tokens = TokenService(store, cache, settings, clock=clock)

        with pytest.raises(TokenMalformed):
            await tokens.validate_access_token(token)

    async def test_inactive_user_rejected(self, tokens, store, user, session):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        store.set_user_active(user.id, False)

        with pytest.raises(UserInactive):
            await tokens.validate_access_token(token)

    async def test_store_outage_fails_the_request(self, tokens, cache, user, session):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        cache.get_multi = AsyncMock(side_effect=StoreUnavailable("counter store unavailable"))

        with pytest.raises(StoreUnavailable):
            await tokens.validate_access_token(token)


class TestRevocation:
    """Blacklist invariants."""

    async def test_revoked_token_stays_revoked(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)

        assert await tokens.revoke(token) is True
        for _ in range(3):
            with pytest.raises(TokenRevoked) as exc_info:
                await tokens.validate_access_token(token)
            assert exc_info.value.kind == "revoked"

        clock.advance(10 * 60)
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(token)

        # Past natural expiry it never validates again
        clock.advance(20 * 60)
        with pytest.raises(TokenExpired):
            await tokens.validate_access_token(token)

    async def test_revoked_token_rejected_within_leeway(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        assert await tokens.revoke(token) is True

        # Naturally expired, but still inside the clock-skew leeway
        clock.advance(15 * 60 + 10)
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(token)

    async def test_revoke_inside_leeway_still_blacklists(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        clock.advance(15 * 60 + 10)

        assert await tokens.revoke(token) is True
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(token)

    async def test_rotated_out_refresh_jti_held_through_leeway(
        self, tokens, cache, user, session, clock
    ):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)
        old = await tokens.validate_refresh_token(refresh)
        await tokens.rotate_refresh_token(refresh)

        clock.advance(7 * 24 * 60 * 60 + 10)
        assert (await cache.get_multi([f"blacklist:{old.token_id}"]))[0] == "1"

    async def test_session_id_of_signed_tokens_only(self, tokens, user, session, clock):
        access, _ = tokens.issue_access_token(user.id, [], session.id)
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        clock.advance(60 * 60)
        assert tokens.session_id_of(access) == session.id
        assert tokens.session_id_of(refresh, token_type="refresh") == session.id
        assert tokens.session_id_of(refresh) is None
        assert tokens.session_id_of(access[:-4] + "AAAA") is None
        assert tokens.session_id_of(None) is None

    async def test_revoking_expired_token_is_noop(self, tokens, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        clock.advance(60 * 60)

        assert await tokens.revoke(token) is False

    async def test_blacklist_entry_expires_with_token(self, tokens, cache, user, session, clock):
        token, _ = tokens.issue_access_token(user.id, [], session.id)
        claims = await tokens.validate_access_token(token)
        await tokens.revoke(token)

        assert (await cache.get_multi([f"blacklist:{claims.token_id}"]))[0] == "1"
        clock.advance(16 * 60)
        assert (await cache.get_multi([f"blacklist:{claims.token_id}"]))[0] is None

    async def test_revoke_session_rejects_descendant_tokens(self, tokens, store, user, session):
        access, _ = tokens.issue_access_token(user.id, [], session.id)
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        await tokens.revoke_session(session.id, reason="test")

        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(access)
        with pytest.raises(TokenRevoked):
            await tokens.validate_refresh_token(refresh)
        stored = store.get_session(session.id)
        assert stored.is_active is False
        assert stored.refresh_token_id is None

    async def test_logout_revokes_token_and_session(self, tokens, user, session):
        access, _ = tokens.issue_access_token(user.id, [], session.id)
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        claims = await tokens.logout(access)

        assert claims.session_id == session.id
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(access)
        with pytest.raises(TokenRevoked):
            await tokens.rotate_refresh_token(refresh)

    async def test_revoke_all_user_sessions_keeps_exception(self, tokens, store, user):
        sessions = [store.create_session(user.id, 60) for _ in range(3)]
        keep = sessions[0]
        keep_token, _ = tokens.issue_access_token(user.id, [], keep.id)
        other_token, _ = tokens.issue_access_token(user.id, [], sessions[1].id)

        revoked = await tokens.revoke_all_user_sessions(user.id, except_session_id=keep.id)

        assert revoked == 2
        assert (await tokens.validate_access_token(keep_token)).session_id == keep.id
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(other_token)
        assert [s.id for s in tokens.get_active_sessions(user.id)] == [keep.id]


class TestRefreshRotation:
    """Single-use refresh tokens."""

    async def test_rotation_issues_new_pair(self, tokens, store, user, session):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        rotated = await tokens.rotate_refresh_token(refresh)

        assert isinstance(rotated, RotatedTokens)
        assert rotated.session_id == session.id
        assert rotated.refresh_token != refresh
        new_claims = await tokens.validate_refresh_token(rotated.refresh_token)
        assert store.get_session(session.id).refresh_token_id == new_claims.token_id
        assert (await tokens.validate_access_token(rotated.access_token)).subject == user.id

    async def test_reuse_revokes_the_whole_session(self, tokens, user, session):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)
        rotated = await tokens.rotate_refresh_token(refresh)

        with pytest.raises(TokenReuseDetected) as exc_info:
            await tokens.rotate_refresh_token(refresh)
        assert exc_info.value.kind == "revoked"

        # The legitimate successor dies with the session
        with pytest.raises(TokenRevoked):
            await tokens.rotate_refresh_token(rotated.refresh_token)
        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(rotated.access_token)

    async def test_concurrent_rotation_has_one_winner(self, tokens, user, session):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)

        results = await asyncio.gather(
            tokens.rotate_refresh_token(refresh),
            tokens.rotate_refresh_token(refresh),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, RotatedTokens)]
        losers = [r for r in results if not isinstance(r, RotatedTokens)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], (ConcurrentRotationLost, TokenReuseDetected))

    async def test_lost_compare_and_swap_is_distinguishable(self, tokens, cache, user, session):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)
        cache.compare_and_swap = AsyncMock(return_value=False)

        with pytest.raises(ConcurrentRotationLost) as exc_info:
            await tokens.rotate_refresh_token(refresh)
        assert exc_info.value.status_code == 409
        assert exc_info.value.kind == "rotation_conflict"

    async def test_expired_refresh_token_rejected(self, tokens, user, session, clock):
        refresh, _ = await tokens.issue_refresh_token(user.id, session.id)
        clock.advance(8 * 24 * 60 * 60)

        with pytest.raises(TokenExpired):
            await tokens.rotate_refresh_token(refresh)

    async def test_deleted_user_tokens_are_revoked(self, tokens, store, user, session):
        access, _ = tokens.issue_access_token(user.id, [], session.id)
        store.users.pop(user.id)

        with pytest.raises(TokenRevoked):
            await tokens.validate_access_token(access)
