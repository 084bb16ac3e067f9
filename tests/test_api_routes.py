"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth endpoints.

Coverage:
  POST /auth/login:
    - 200 with access token, profile and httpOnly refresh_token cookie
    - email trimmed and lower-cased; same identity on repeat login
    - 422 for malformed or missing email
    - 429 with Retry-After once the per-email window is used up
    - X-Forwarded-For recorded as the attempt origin
    - per-IP slowapi throttle answers 429 with Retry-After
  POST /auth/refresh:
    - via cookie, JSON body, or Bearer header; no rotation
    - 401 reason=missing / invalid / revoked
  POST /auth/revoke:
    - 204 and cookie cleared; subsequent refresh is revoked
  POST /auth/logout:
    - 401 without token; revokes all renewal secrets of the caller
  GET /auth/me, GET /auth/session:
    - profile for the token holder; optional auth never 401s
  CORS preflight:
    - only GET and POST are offered to browser origins
"""

from __future__ import annotations

import pytest

from api.limiter import limiter
from conftest import login, refresh_cookie_value
from core.config import get_settings

_LOGIN = "/api/v1/auth/login"
_REFRESH = "/api/v1/auth/refresh"
_REVOKE = "/api/v1/auth/revoke"
_LOGOUT = "/api/v1/auth/logout"
_ME = "/api/v1/auth/me"
_SESSION = "/api/v1/auth/session"


@pytest.fixture(autouse=True)
def _fresh_cookie_jar(api_client):
    """Start every test without cookies left over from earlier logins."""
    client, _ = api_client
    client.cookies.clear()
    yield
    client.cookies.clear()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_returns_token_and_profile(self, api_client) -> None:
        client, _ = api_client
        resp = login(client, "route-login@example.com")
        assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
        data = resp.json()
        assert data["access_token"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 900
        assert data["user"]["email"] == "route-login@example.com"
        assert data["user"]["karma"] == 0
        assert "refresh_token" not in data, "Renewal secret must travel only in the cookie"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_login_sets_scoped_httponly_cookie(self, api_client) -> None:
        client, _ = api_client
        resp = login(client, "route-cookie@example.com")
        cookie_header = resp.headers["set-cookie"]
        assert "refresh_token=" in cookie_header
        assert "HttpOnly" in cookie_header
        assert "Path=/api/v1/auth" in cookie_header
        assert "samesite=strict" in cookie_header.lower()
        assert len(refresh_cookie_value(resp)) == 64

    def test_email_is_normalized(self, api_client) -> None:
        client, store = api_client
        resp = login(client, "  Route-Mixed@Example.COM ")
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "route-mixed@example.com"
        assert store.find_identity_by_email("route-mixed@example.com") is not None

    def test_repeat_login_reuses_identity(self, api_client) -> None:
        client, _ = api_client
        first = login(client, "route-repeat@example.com").json()["user"]["id"]
        second = login(client, "ROUTE-REPEAT@example.com").json()["user"]["id"]
        assert first == second

    @pytest.mark.parametrize("email", ["not-an-email", "a@b", "two@@example.com", ""])
    def test_invalid_email_is_422(self, api_client, email: str) -> None:
        client, _ = api_client
        resp = login(client, email)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_missing_body_is_422(self, api_client) -> None:
        client, _ = api_client
        assert client.post(_LOGIN).status_code == 422

    def test_sixth_login_is_rate_limited(self, api_client) -> None:
        client, store = api_client
        for i in range(5):
            resp = login(client, "route-limit@example.com")
            assert resp.status_code == 200, f"Login {i + 1} failed: {resp.text}"

        resp = login(client, "route-limit@example.com")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        retry_after = int(resp.headers["Retry-After"])
        assert 0 < retry_after <= 15 * 60
        assert len(store.list_attempts("route-limit@example.com")) == 5

    def test_forwarded_for_is_recorded_as_origin(self, api_client) -> None:
        client, store = api_client
        resp = login(
            client,
            "route-proxy@example.com",
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "route-test"},
        )
        assert resp.status_code == 200
        attempt = store.list_attempts("route-proxy@example.com")[0]
        assert attempt.origin_address == "203.0.113.7"
        assert attempt.user_agent == "route-test"
        assert attempt.succeeded is True

    def test_per_ip_login_throttle(self, api_client, monkeypatch) -> None:
        client, _ = api_client
        throttled = get_settings().model_copy(update={"login_rate_limit": "2/minute"})
        monkeypatch.setattr("api.limiter.get_settings", lambda: throttled)
        limiter.reset()
        try:
            codes = [login(client, f"route-ip-{i}@example.com").status_code for i in range(3)]
            assert codes[:2] == [200, 200], f"Expected two logins under the limit, got {codes}"
            assert codes[2] == 429

            resp = login(client, "route-ip-extra@example.com")
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "rate_limited"
            assert int(resp.headers["Retry-After"]) > 0
        finally:
            limiter.reset()


# ---------------------------------------------------------------------------
# Refresh / revoke
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_via_cookie(self, api_client) -> None:
        client, _ = api_client
        secret = refresh_cookie_value(login(client, "route-refresh-cookie@example.com"))
        client.cookies.clear()
        client.cookies.set("refresh_token", secret)

        resp = client.post(_REFRESH)
        assert resp.status_code == 200, resp.text
        token = resp.json()["access_token"]
        assert client.get(_ME, headers=_bearer(token)).json()["email"] == "route-refresh-cookie@example.com"

    def test_refresh_via_body_does_not_rotate(self, api_client) -> None:
        client, _ = api_client
        secret = refresh_cookie_value(login(client, "route-refresh-body@example.com"))
        client.cookies.clear()
        for _ in range(2):
            resp = client.post(_REFRESH, json={"refresh_token": secret})
            assert resp.status_code == 200, resp.text
            assert resp.json()["token_type"] == "bearer"
            assert resp.headers["Cache-Control"] == "no-store"
            assert "set-cookie" not in resp.headers

    def test_refresh_via_bearer_header(self, api_client) -> None:
        client, _ = api_client
        secret = refresh_cookie_value(login(client, "route-refresh-bearer@example.com"))
        client.cookies.clear()
        resp = client.post(_REFRESH, headers=_bearer(secret))
        assert resp.status_code == 200

    def test_refresh_without_secret_is_missing(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(_REFRESH)
        assert resp.status_code == 401
        assert resp.json()["error"]["reason"] == "missing"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_refresh_unknown_secret_is_invalid(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(_REFRESH, json={"refresh_token": "0" * 64})
        assert resp.status_code == 401
        error = resp.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["reason"] == "invalid"
        assert error["message"] == "Invalid or expired session."

    def test_revoke_then_refresh_is_revoked(self, api_client) -> None:
        client, _ = api_client
        secret = refresh_cookie_value(login(client, "route-revoke@example.com"))
        client.cookies.clear()

        resp = client.post(_REVOKE, json={"refresh_token": secret})
        assert resp.status_code == 204
        assert "Max-Age=0" in resp.headers["set-cookie"]

        resp = client.post(_REFRESH, json={"refresh_token": secret})
        assert resp.status_code == 401
        assert resp.json()["error"]["reason"] == "revoked"

    def test_revoke_unknown_secret_is_204(self, api_client) -> None:
        client, _ = api_client
        assert client.post(_REVOKE, json={"refresh_token": "1" * 64}).status_code == 204

    def test_revoke_without_secret_is_401(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(_REVOKE)
        assert resp.status_code == 401
        assert resp.json()["error"]["reason"] == "missing"


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


class TestLogout:
    def test_logout_revokes_every_secret(self, api_client) -> None:
        client, _ = api_client
        first = login(client, "route-logout@example.com")
        second = login(client, "route-logout@example.com")
        secrets_issued = [refresh_cookie_value(first), refresh_cookie_value(second)]
        token = second.json()["access_token"]
        client.cookies.clear()

        resp = client.post(_LOGOUT, headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"message": "Logged out successfully.", "revoked": 2}
        assert "Max-Age=0" in resp.headers["set-cookie"]

        for secret in secrets_issued:
            refreshed = client.post(_REFRESH, json={"refresh_token": secret})
            assert refreshed.status_code == 401
            assert refreshed.json()["error"]["reason"] == "revoked"

    def test_logout_is_idempotent(self, api_client) -> None:
        client, _ = api_client
        token = login(client, "route-logout-twice@example.com").json()["access_token"]
        client.cookies.clear()
        assert client.post(_LOGOUT, headers=_bearer(token)).json()["revoked"] == 1
        assert client.post(_LOGOUT, headers=_bearer(token)).json()["revoked"] == 0

    def test_logout_requires_token(self, api_client) -> None:
        client, _ = api_client
        resp = client.post(_LOGOUT)
        assert resp.status_code == 401
        assert resp.json()["error"]["reason"] == "missing"


# ---------------------------------------------------------------------------
# Me / session
# ---------------------------------------------------------------------------


class TestMe:
    def test_me_returns_profile(self, api_client) -> None:
        client, _ = api_client
        data = login(client, "route-me@example.com").json()
        resp = client.get(_ME, headers=_bearer(data["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["id"] == data["user"]["id"]
        assert resp.json()["email"] == "route-me@example.com"

    def test_session_anonymous(self, api_client) -> None:
        client, _ = api_client
        resp = client.get(_SESSION)
        assert resp.status_code == 200
        assert resp.json() == {"authenticated": False, "user_id": None, "email": None}

    def test_session_authenticated(self, api_client) -> None:
        client, _ = api_client
        data = login(client, "route-session@example.com").json()
        resp = client.get(_SESSION, headers=_bearer(data["access_token"]))
        assert resp.json()["authenticated"] is True
        assert resp.json()["user_id"] == data["user"]["id"]
        assert resp.json()["email"] == "route-session@example.com"


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


class TestCors:
    def _preflight(self, client, method: str):
        return client.options(
            _LOGIN,
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": method},
        )

    def test_post_preflight_allowed(self, api_client) -> None:
        client, _ = api_client
        resp = self._preflight(client, "POST")
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
        assert resp.headers["access-control-allow-credentials"] == "true"

    @pytest.mark.parametrize("method", ["PATCH", "DELETE", "PUT"])
    def test_unused_methods_rejected(self, api_client, method: str) -> None:
        client, _ = api_client
        assert self._preflight(client, method).status_code == 400
