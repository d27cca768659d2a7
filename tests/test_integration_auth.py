"""Integration tests for the authentication flow.

Tests the complete auth flow including:
- Registration and login
- Access token expiry and refresh
- Refresh reuse detection
- Logout and session revocation
- CSRF enforcement on cookie-carrying requests
- Health check and security headers
"""

import pytest
from fastapi.testclient import TestClient

from trustgate import app as app_module
from trustgate.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="user@example.com"):
    response = client.post("/auth/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201
    return response.json()["data"]


def _login(client, email="user@example.com"):
    response = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()["data"]


def _auth_headers(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def _csrf_headers(tokens):
    return {**_auth_headers(tokens), "X-CSRF-Token": tokens["csrf_token"]}


class TestRegistration:
    def test_register_creates_user(self, client):
        data = _register(client)
        assert data["email"] == "user@example.com"
        assert data["roles"] == ["user"]
        assert "password_hash" not in data

    def test_duplicate_email_conflicts(self, client):
        _register(client)
        response = client.post(
            "/auth/register", json={"email": "USER@example.com", "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    @pytest.mark.parametrize(
        "payload",
        [
            {"email": "not-an-email", "password": PASSWORD},
            {"email": "user@example.com", "password": "short"},
            {"email": "user@example.com"},
        ],
    )
    def test_invalid_registration(self, client, payload):
        response = client.post("/auth/register", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLogin:
    def test_login_returns_tokens_and_cookies(self, client):
        _register(client)

        response = client.post("/auth/login", json={"email": "user@example.com", "password": PASSWORD})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["access_token"].count(".") == 2
        assert data["csrf_token"]
        set_cookie = response.headers.get_list("set-cookie")
        refresh_cookie = next(c for c in set_cookie if c.startswith("refresh_token="))
        assert "HttpOnly" in refresh_cookie
        assert "Path=/auth" in refresh_cookie
        csrf_cookie = next(c for c in set_cookie if c.startswith("csrf-token="))
        assert "HttpOnly" not in csrf_cookie

    def test_unknown_email_and_wrong_password_look_alike(self, client):
        _register(client)

        unknown = client.post("/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
        wrong = client.post("/auth/login", json={"email": "user@example.com", "password": "WrongPassword1!"})

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]
        assert unknown.json()["error"]["kind"] == wrong.json()["error"]["kind"] == "invalid"

    def test_me_with_access_token(self, client):
        _register(client)
        tokens = _login(client)

        response = client.get("/api/me", headers=_auth_headers(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "user@example.com"

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer not.a.jwt"}, {"Authorization": "Basic dXNlcjpwYXNz"}],
    )
    def test_me_requires_valid_token(self, client, headers):
        response = client.get("/api/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "invalid"


class TestTokenLifecycle:
    """Expiry, refresh, reuse and logout through the HTTP surface."""

    def test_expired_access_token_then_refresh(self, client, clock):
        get_runtime().tokens._clock = clock
        _register(client)
        tokens = _login(client)

        clock.advance(20 * 60)
        expired = client.get("/api/me", headers=_auth_headers(tokens))

        assert expired.status_code == 401
        assert expired.json()["error"]["kind"] == "expired"

        refreshed = client.post(
            "/auth/refresh",
            json={"refresh_token": tokens["refresh_token"]},
            headers={"X-CSRF-Token": tokens["csrf_token"]},
        )
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]
        assert new_tokens["session_id"] == tokens["session_id"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        response = client.get("/api/me", headers=_auth_headers(new_tokens))
        assert response.status_code == 200

    def test_refresh_from_cookie(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/auth/refresh", headers={"X-CSRF-Token": tokens["csrf_token"]})

        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == tokens["user_id"]

    def test_refresh_reuse_revokes_session(self, client):
        _register(client)
        tokens = _login(client)
        csrf = {"X-CSRF-Token": tokens["csrf_token"]}

        first = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}, headers=csrf)
        assert first.status_code == 200
        rotated = first.json()["data"]

        replay = client.post(
            "/auth/refresh",
            json={"refresh_token": tokens["refresh_token"]},
            headers={"X-CSRF-Token": rotated["csrf_token"]},
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["kind"] == "revoked"

        response = client.get("/api/me", headers=_auth_headers(rotated))
        assert response.status_code == 401
        assert response.json()["error"]["kind"] == "revoked"

    def test_logout_revokes_access_token(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/auth/logout", headers=_csrf_headers(tokens))

        assert response.status_code == 200
        assert response.json()["data"]["revoked"] is True
        after = client.get("/api/me", headers=_auth_headers(tokens))
        assert after.status_code == 401
        assert after.json()["error"]["kind"] == "revoked"

    def test_password_change_revokes_sessions(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post(
            "/api/me/password",
            json={"current_password": PASSWORD, "new_password": "AnotherPassword456!"},
            headers=_csrf_headers(tokens),
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 1
        assert client.get("/api/me", headers=_auth_headers(tokens)).status_code == 401
        relogin = client.post(
            "/auth/login", json={"email": "user@example.com", "password": "AnotherPassword456!"}
        )
        assert relogin.status_code == 200

    def test_list_and_revoke_other_sessions(self, client):
        _register(client)
        first = _login(client)
        second = _login(client)

        listed = client.get("/api/sessions", headers=_auth_headers(second))
        assert listed.status_code == 200
        sessions = listed.json()["data"]
        assert len(sessions) == 2
        assert [s["id"] for s in sessions if s["current"]] == [second["session_id"]]

        revoked = client.delete("/api/sessions", headers=_csrf_headers(second))
        assert revoked.status_code == 200
        assert revoked.json()["data"]["sessions_revoked"] == 1
        assert client.get("/api/me", headers=_auth_headers(first)).status_code == 401
        assert client.get("/api/me", headers=_auth_headers(second)).status_code == 200


class TestCSRF:
    """Double-submit enforcement for cookie-carrying state changes."""

    def test_state_change_without_header_is_rejected(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post(
            "/api/api-keys", json={"name": "ci"}, headers=_auth_headers(tokens)
        )

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "csrf_missing"

    def test_wrong_header_is_rejected(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post(
            "/api/api-keys",
            json={"name": "ci"},
            headers={**_auth_headers(tokens), "X-CSRF-Token": "forged"},
        )

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "csrf_mismatch"

    def test_matching_header_is_accepted(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/api/api-keys", json={"name": "ci"}, headers=_csrf_headers(tokens))

        assert response.status_code == 201

    def test_exact_trusted_origin_is_exempt(self, client):
        _register(client)
        tokens = _login(client)

        trusted = client.post(
            "/api/api-keys",
            json={"name": "ext"},
            headers={**_auth_headers(tokens), "Origin": "chrome-extension://trustedextensionid"},
        )
        lookalike = client.post(
            "/api/api-keys",
            json={"name": "evil"},
            headers={
                **_auth_headers(tokens),
                "Origin": "chrome-extension://trustedextensionid.evil.com",
            },
        )

        assert trusted.status_code == 201
        assert lookalike.status_code == 403

    def test_bearer_client_without_cookies_is_not_checked(self, client):
        _register(client)
        tokens = _login(client)

        cookieless = TestClient(app_module.app)
        response = cookieless.post("/api/api-keys", json={"name": "ci"}, headers=_auth_headers(tokens))

        assert response.status_code == 201

    def test_anonymous_token_rejected_for_session(self, client):
        _register(client)
        tokens = _login(client)
        anonymous = TestClient(app_module.app).get("/auth/csrf-token").json()["data"]["csrf_token"]

        forged = TestClient(app_module.app, cookies={"csrf-token": anonymous})
        response = forged.delete(
            "/api/sessions", headers={**_auth_headers(tokens), "X-CSRF-Token": anonymous}
        )

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "csrf_mismatch"

    def test_other_sessions_token_rejected(self, client):
        _register(client)
        victim = _login(client)
        attacker_client = TestClient(app_module.app)
        _register(attacker_client, "attacker@example.com")
        attacker = _login(attacker_client, "attacker@example.com")

        forged = TestClient(app_module.app, cookies={"csrf-token": attacker["csrf_token"]})
        response = forged.post(
            "/api/api-keys",
            json={"name": "ci"},
            headers={**_auth_headers(victim), "X-CSRF-Token": attacker["csrf_token"]},
        )

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "csrf_mismatch"

    def test_csrf_token_endpoint_binds_to_session(self, client):
        _register(client)
        tokens = _login(client)
        anonymous = TestClient(app_module.app).get("/auth/csrf-token").json()["data"]["csrf_token"]

        reissued = TestClient(app_module.app, cookies={"csrf-token": anonymous}).get(
            "/auth/csrf-token", headers=_auth_headers(tokens)
        )
        bound = reissued.json()["data"]["csrf_token"]
        assert bound != anonymous

        response = TestClient(app_module.app, cookies={"csrf-token": bound}).post(
            "/api/api-keys",
            json={"name": "ci"},
            headers={**_auth_headers(tokens), "X-CSRF-Token": bound},
        )
        assert response.status_code == 201

    def test_csrf_token_endpoint_reuses_valid_cookie(self, client):
        first = client.get("/auth/csrf-token")
        assert first.status_code == 200
        token = first.json()["data"]["csrf_token"]
        assert client.cookies.get("csrf-token") == token

        second = client.get("/auth/csrf-token")
        assert second.json()["data"]["csrf_token"] == token


class TestHealthAndHeaders:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["counter_store"]["type"] == "MemoryCache"

    def test_security_headers(self, client):
        response = client.get("/api/me", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Request-ID"] == "req-123"
