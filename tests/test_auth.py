"""Tests for session-authenticated routes, health checks and error responses."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from beout.config import Settings
from beout.exceptions import (
    AuthError,
    AuthTimeout,
    BackendUnreachable,
    ConfigurationError,
    InvalidAssertion,
    SessionExpired,
    StateMismatch,
    TokenExchangeFailed,
)
from beout.main import create_app
from beout.middleware.error_handler import auth_error_handler
from beout.schemas.auth import UserSummary


def _login(client) -> str:
    location = client.get("/oauth/google/login", follow_redirects=False).headers["location"]
    state = location.split("state=")[1].split("&")[0]
    response = client.get("/oauth/google/callback", params={"code": "code-1", "state": state}, follow_redirects=False)
    return response.headers["location"].split("token=")[1]


class TestMeEndpoint:
    def test_me(self, client):
        token = _login(client)
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        body = response.json()
        assert body["user"]["email"] == "ada@example.com"
        assert body["user"]["provider"] == "google"
        assert body["profile"]["lastName"] == "Lovelace"

    def test_me_without_auth(self, client):
        assert client.get("/auth/me").status_code == 401

    def test_me_with_garbage_token(self, client):
        response = client.get("/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_me_with_expired_token(self, client, app):
        user = UserSummary(id=str(uuid.uuid4()), email="ada@example.com", role="user")
        token = app.state.session_issuer.issue(user, now=datetime.now(timezone.utc) - timedelta(days=8))
        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert "expired" in response.json()["detail"]

    def test_me_for_deleted_user(self, client, app):
        user = UserSummary(id=str(uuid.uuid4()), email="gone@example.com", role="user")
        token = app.state.session_issuer.issue(user)
        assert client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).status_code == 404


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok", "service": "beout-auth"}

    def test_ready_checks_database(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok"}

    def test_request_id_header(self, client):
        assert "X-Request-ID" in client.get("/health").headers


class TestStartup:
    def test_missing_secret_fails_fast(self):
        with pytest.raises(ConfigurationError):
            create_app(Settings(jwt_secret="", database_url="sqlite+aiosqlite:///:memory:"))


def _raising_app(exc: Exception) -> TestClient:
    app = FastAPI()
    app.add_exception_handler(AuthError, auth_error_handler)

    @app.get("/boom")
    async def boom():
        raise exc

    return TestClient(app)


class TestErrorMapping:
    @pytest.mark.parametrize(
        "exc, status, code",
        [
            (StateMismatch(), 400, "state_mismatch"),
            (InvalidAssertion(), 400, "invalid_assertion"),
            (TokenExchangeFailed(), 400, "token_exchange_failed"),
            (SessionExpired(), 401, "session_expired"),
            (BackendUnreachable(), 502, "backend_unreachable"),
            (ConfigurationError(), 503, "configuration_error"),
            (AuthTimeout(), 504, "timeout"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        response = _raising_app(exc).get("/boom")
        assert response.status_code == status
        assert response.json() == {"detail": exc.user_message, "error": code}

    def test_provider_body_is_not_returned(self):
        exc = TokenExchangeFailed(provider_error='{"error": "invalid_grant", "access_token": "secret"}')
        response = _raising_app(exc).get("/boom")
        assert "invalid_grant" not in response.text
        assert "secret" not in response.text
