"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Registration and field-tagged validation errors
- Login with cookies and bearer tokens
- Token refresh from body and cookie, and reuse rejection
- Logout
- Google sign-in through the callback
- Password reset
- Health and request-id headers
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from agora.app import create_app
from agora.config import Settings
from agora.service.google import GoogleOAuthClient
from agora.service.runtime import Runtime

PASSWORD = "Password1"


def _google_transport():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "provider-access-token"})
        return httpx.Response(200, json={"id": "google-42", "email": "gina@example.com"})

    return httpx.MockTransport(handler)


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        use_memory_store=True,
        jwt_secret="integration-secret",
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="http://testserver/auth/google/callback",
        frontend_url="https://app.example.com",
    )


@pytest.fixture
def runtime(settings, passwords, stub_email):
    google = GoogleOAuthClient(
        settings.google_client_id,
        settings.google_client_secret,
        settings.google_redirect_uri,
        transport=_google_transport(),
    )
    return Runtime(settings, email=stub_email, passwords=passwords, google=google)


@pytest.fixture
def client(settings, runtime):
    """Create a test client for the API."""
    with TestClient(create_app(settings, runtime)) as test_client:
        yield test_client


def _register(client, email="jane@example.com", username="jane_doe", password=PASSWORD):
    return client.post(
        "/auth/register", json={"email": email, "username": username, "password": password}
    )


def _login(client, email="jane@example.com", password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


class TestRegister:
    def test_register_creates_user(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "jane@example.com"
        assert body["data"]["auth_provider"] == "email"
        assert "password" not in body["data"]
        assert "access_token" not in response.cookies

    def test_register_reports_every_bad_field(self, client):
        response = client.post("/auth/register", json={"email": "bad"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert {item["field"] for item in error["details"]} == {"email", "username", "password"}

    def test_register_duplicate_email(self, client):
        _register(client)

        response = _register(client, username="someone_else")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == [
            {"field": "email", "message": "email already registered"}
        ]


class TestLogin:
    def test_login_sets_cookies_and_returns_tokens(self, client):
        _register(client)

        response = _login(client)

        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]
        assert tokens["token_type"] == "bearer"
        assert response.cookies["access_token"] == tokens["access_token"]
        assert response.cookies["refresh_token"] == tokens["refresh_token"]
        set_cookie = response.headers.get_list("set-cookie")
        assert all("HttpOnly" in header for header in set_cookie)
        assert all("samesite=lax" in header.lower() for header in set_cookie)

    def test_bad_credentials(self, client):
        _register(client)

        response = _login(client, password="Password2")

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid email or password",
            "details": None,
        }

    def test_me_with_cookie_and_with_bearer(self, client):
        _register(client)
        access = _login(client).json()["data"]["tokens"]["access_token"]

        assert client.get("/users/me").json()["data"]["username"] == "jane_doe"

        client.cookies.clear()
        response = client.get("/users/me", headers={"Authorization": f"Bearer {access}"})
        assert response.status_code == 200

    def test_me_without_token(self, client):
        response = client.get("/users/me")

        assert response.status_code == 401


class TestRefresh:
    def test_refresh_is_single_use(self, client):
        _register(client)
        refresh_token = _login(client).json()["data"]["tokens"]["refresh_token"]

        first = client.post("/auth/refresh", json={"refresh_token": refresh_token})
        second = client.post("/auth/refresh", json={"refresh_token": refresh_token})

        assert first.status_code == 200
        assert first.json()["data"]["refresh_token"] != refresh_token
        assert second.status_code == 401
        assert second.json()["error"]["message"] == "invalid refresh token"

    def test_refresh_from_cookie(self, client):
        _register(client)
        _login(client)

        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert response.cookies["refresh_token"] == response.json()["data"]["refresh_token"]

    def test_refresh_without_token(self, client):
        response = client.post("/auth/refresh")

        assert response.status_code == 401


class TestLogout:
    def test_logout_revokes_refresh_token(self, client):
        _register(client)
        refresh_token = _login(client).json()["data"]["tokens"]["refresh_token"]

        response = client.post("/auth/logout", json={"refresh_token": refresh_token})

        assert response.status_code == 200
        cleared = " ".join(response.headers.get_list("set-cookie"))
        assert "access_token=" in cleared and "refresh_token=" in cleared
        retry = client.post("/auth/refresh", json={"refresh_token": refresh_token})
        assert retry.status_code == 401

    def test_logout_without_session_succeeds(self, client):
        assert client.post("/auth/logout").status_code == 200


class TestGoogle:
    def test_callback_signs_in(self, client):
        url = client.get("/auth/google/url").json()["data"]["url"]
        state = parse_qs(urlparse(url).query)["state"][0]

        response = client.get("/auth/google/callback", params={"code": "abc", "state": state})

        assert response.status_code == 200
        assert response.json()["data"]["user"]["auth_provider"] == "google"
        assert "access_token" in response.cookies

        replay = client.get("/auth/google/callback", params={"code": "abc", "state": state})
        assert replay.status_code == 401

    def test_google_account_cannot_log_in_with_password(self, client):
        url = client.get("/auth/google/url").json()["data"]["url"]
        state = parse_qs(urlparse(url).query)["state"][0]
        client.get("/auth/google/callback", params={"code": "abc", "state": state})

        response = _login(client, email="gina@example.com")

        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"hint": "sign in with Google instead"}


class TestPasswordReset:
    def test_reset_flow(self, client, stub_email):
        _register(client)
        old_refresh = _login(client).json()["data"]["tokens"]["refresh_token"]

        response = client.post("/auth/forgot-password", json={"email": "jane@example.com"})
        assert response.status_code == 200
        token = stub_email.last_token
        assert stub_email.sent[-1]["url"] == f"https://app.example.com/forgot-password/{token}"

        reset = client.post(f"/auth/reset-password/{token}", json={"password": "NewPassword1"})
        assert reset.status_code == 200

        again = client.post(f"/auth/reset-password/{token}", json={"password": "NewPassword2"})
        assert again.status_code == 400
        assert again.json()["error"]["message"] == "invalid or expired reset token"

        assert _login(client, password=PASSWORD).status_code == 401
        assert _login(client, password="NewPassword1").status_code == 200
        stale = client.post("/auth/refresh", json={"refresh_token": old_refresh})
        assert stale.status_code == 401

    def test_unknown_email_gets_same_answer(self, client):
        response = client.post("/auth/forgot-password", json={"email": "nobody@example.com"})

        assert response.status_code == 200


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_error_envelope_carries_request_id(self, client):
        response = client.get("/users/me", headers={"X-Request-ID": "req-456"})

        assert response.json()["request_id"] == "req-456"
