"""Integration tests for the HTTP auth flow.

Covers registration, login, refresh rotation, logout, the password reset
round trip and the profile endpoints through the FastAPI app.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from curasense import app as app_module
from curasense.service.runtime import get_runtime
from curasense.storage.models import UserRole, UserStatus

PASSWORD = "Secret123"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="jane@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={"email": email, "password": password, "firstName": "Jane", "lastName": "Doe"},
    )


def _login(client, email="jane@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['access_token']}"}


def _refresh_with(client, refresh_token):
    """Replay a specific refresh token instead of whatever the jar holds."""
    client.cookies.clear()
    client.cookies.set("refresh_token", refresh_token)
    return client.post("/v1/auth/refresh")


def _last_reset_token():
    text = get_runtime().email.outbox[-1]["text"]
    link = next(line for line in text.splitlines() if "token=" in line)
    return parse_qs(urlparse(link.strip()).query)["token"][0]


class TestRegister:
    def test_register_returns_user_token_and_cookie(self, client):
        response = _register(client)

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["user"]["email"] == "jane@example.com"
        assert data["user"]["role"] == "PATIENT"
        assert data["token_type"] == "bearer"
        assert data["access_token"]
        assert "refresh_token" not in data
        set_cookie = response.headers["set-cookie"]
        assert "refresh_token=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "Path=/v1/auth" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

    def test_duplicate_email_is_409(self, client):
        _register(client)
        response = _register(client, email="JANE@example.com")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_missing_fields_are_rejected(self, client):
        response = client.post("/v1/auth/register", json={"email": "a@example.com", "password": PASSWORD})
        assert response.status_code == 422

    def test_short_password_is_rejected(self, client):
        assert _register(client, password="short").status_code == 422

    def test_role_cannot_be_chosen_at_signup(self, client):
        response = client.post(
            "/v1/auth/register",
            json={
                "email": "a@example.com",
                "password": PASSWORD,
                "firstName": "A",
                "lastName": "B",
                "role": "ADMIN",
            },
        )
        assert response.status_code == 422

    def test_signup_disabled_is_403(self, client):
        get_runtime().settings.allow_signup = False
        assert _register(client).status_code == 403


class TestLogin:
    def test_login_success(self, client):
        _register(client)
        response = _login(client, email="Jane@Example.com")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["expires_in"] == 15 * 60
        assert data["user"]["last_login_at"]
        assert "refresh_token=" in response.headers["set-cookie"]
        assert response.headers["X-RateLimit-Limit"] == "10"

    def test_wrong_password_and_unknown_email_are_identical(self, client):
        _register(client)
        wrong = _login(client, password="Wrong1234")
        unknown = _login(client, email="nobody@example.com")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]

    def test_lockout_uses_same_response(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="Wrong1234").status_code == 401

        locked = _login(client)
        assert locked.status_code == 401
        assert locked.json()["error"]["message"] == "Invalid email or password"

    def test_login_is_rate_limited(self, client):
        responses = [_login(client, email="spam@example.com") for _ in range(11)]

        assert responses[-1].status_code == 429
        assert responses[-1].json()["error"]["code"] == "rate_limited"
        assert int(responses[-1].headers["Retry-After"]) >= 1


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client):
        _register(client)
        login = _login(client)
        old_cookie = login.cookies.get("refresh_token")

        refreshed = client.post("/v1/auth/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["data"]["access_token"]
        new_cookie = refreshed.cookies.get("refresh_token")
        assert new_cookie and new_cookie != old_cookie

        replay = _refresh_with(client, old_cookie)
        assert replay.status_code == 401

    def test_refresh_without_cookie_clears_cookie(self, client):
        response = client.post("/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert 'refresh_token=""' in response.headers["set-cookie"] or "Max-Age=0" in response.headers["set-cookie"]

    def test_logout_is_idempotent(self, client):
        _register(client)
        _login(client)

        assert client.post("/v1/auth/logout").status_code == 200
        assert client.post("/v1/auth/logout").status_code == 200
        assert client.post("/v1/auth/refresh").status_code == 401

    def test_logout_all_revokes_every_session(self, client):
        _register(client)
        first = _login(client)
        first_cookie = first.cookies.get("refresh_token")
        second = _login(client)

        response = client.post("/v1/auth/logout-all", headers=_bearer(second))
        assert response.status_code == 200
        assert response.json()["data"]["sessions_revoked"] == 3  # register + two logins
        replay = _refresh_with(client, first_cookie)
        assert replay.status_code == 401

    def test_logout_all_requires_bearer(self, client):
        assert client.post("/v1/auth/logout-all").status_code == 401


class TestVerifyAndProfile:
    def test_verify_returns_current_user(self, client):
        registered = _register(client)
        response = client.get("/v1/auth/verify", headers=_bearer(registered))

        assert response.status_code == 200
        assert response.json()["data"]["user"]["email"] == "jane@example.com"

    def test_invalid_bearer_is_401(self, client):
        response = client.get("/v1/me", headers={"Authorization": "Bearer nonsense"})
        assert response.status_code == 401

    def test_profile_update(self, client):
        registered = _register(client)
        response = client.patch(
            "/v1/me",
            headers=_bearer(registered),
            json={"firstName": "Janet", "phone": "+1 555 0100", "preferences": {"lang": "en"}},
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["first_name"] == "Janet"
        assert data["display_name"] == "Janet Doe"
        assert data["preferences"] == {"lang": "en"}

    def test_profile_update_null_clears_phone(self, client):
        registered = _register(client)
        headers = _bearer(registered)
        client.patch("/v1/me", headers=headers, json={"phone": "+1 555 0100"})

        response = client.patch("/v1/me", headers=headers, json={"phone": None, "firstName": None})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["phone"] is None
        assert data["first_name"] == "Jane"

    def test_profile_update_cannot_change_role(self, client):
        registered = _register(client)
        response = client.patch("/v1/me", headers=_bearer(registered), json={"role": "ADMIN"})

        assert response.status_code == 422
        user = get_runtime().store.get_user_by_email("jane@example.com")
        assert user.role is UserRole.PATIENT

    def test_suspended_user_cannot_refresh(self, client):
        _register(client)
        _login(client)
        runtime = get_runtime()
        user = runtime.store.get_user_by_email("jane@example.com")
        runtime.store.set_user_status(user.id, UserStatus.SUSPENDED)

        assert client.post("/v1/auth/refresh").status_code == 401


class TestPasswordReset:
    def test_forgot_password_response_is_identical_for_unknown_email(self, client):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "jane@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "nobody@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert len(get_runtime().email.outbox) == 1

    def test_reset_round_trip(self, client):
        _register(client)
        old_login = _login(client)
        old_cookie = old_login.cookies.get("refresh_token")
        client.post("/v1/auth/forgot-password", json={"email": "jane@example.com"})
        token = _last_reset_token()

        status = client.get("/v1/auth/reset-password", params={"token": token})
        assert status.status_code == 200
        assert status.json()["data"] == {"valid": True, "email": "ja***@example.com"}

        reset = client.post("/v1/auth/reset-password", json={"token": token, "password": "NewPass123"})
        assert reset.status_code == 200
        assert "Password reset successfully" in reset.json()["data"]["message"]

        assert _login(client).status_code == 401
        assert _login(client, password="NewPass123").status_code == 200
        replay = _refresh_with(client, old_cookie)
        assert replay.status_code == 401

        again = client.post("/v1/auth/reset-password", json={"token": token, "password": "Other1234"})
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "Invalid or expired reset token"

    def test_invalid_token_check_is_400(self, client):
        response = client.get("/v1/auth/reset-password", params={"token": "bogus"})
        assert response.status_code == 400

    def test_weak_reset_password_is_rejected(self, client):
        response = client.post("/v1/auth/reset-password", json={"token": "x", "password": "alllowercase1"})
        assert response.status_code == 422


class TestAppSurface:
    def test_healthz_with_memory_store(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
