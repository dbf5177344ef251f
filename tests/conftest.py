"""Shared test fixtures."""

import os

# beout.main builds a default app at import time
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-session-signing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

from urllib.parse import parse_qs  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from beout.config import Settings  # noqa: E402
from beout.models.base import Base  # noqa: E402
from beout.schemas.identity import IdentityAssertion  # noqa: E402
from beout.services.oauth_session_store import MemoryOAuthSessionStore  # noqa: E402

JWT_SECRET = "test-secret-key-for-session-signing"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret=JWT_SECRET,
        google_client_id="web-client.apps.googleusercontent.com",
        google_client_secret="google-web-secret",
        google_ios_client_id="ios-client.apps.googleusercontent.com",
        facebook_app_id="fb-app-id",
        facebook_app_secret="fb-app-secret",
        apple_client_ids="com.beout.app",
        public_base_url="https://api.beout.test",
        rate_limit_enabled=False,
        debug=True,
    )


@pytest.fixture
def db_url(tmp_path) -> str:
    """A fresh SQLite database with the schema created."""
    path = tmp_path / "beout.db"
    engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(engine)
    engine.dispose()
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def session_factory(db_url):
    # NullPool: every session opens its connection on the loop that uses it
    engine = create_async_engine(db_url, poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def google_assertion() -> IdentityAssertion:
    return IdentityAssertion(
        provider="google",
        provider_user_id="google-sub-123",
        email="ada@example.com",
        email_verified=True,
        display_name="Ada Lovelace",
        avatar_url="https://example.com/ada.png",
        given_name="Ada",
        family_name="Lovelace",
    )


class FakeProviders:
    """Google and Facebook token/userinfo endpoints behind httpx.MockTransport."""

    def __init__(self) -> None:
        self.token_requests: list[dict] = []
        self.userinfo_requests = 0
        self.token_status = 200
        self.token_body: str | None = None
        self.used_codes: set[str] = set()
        self.google_user = {
            "id": "google-sub-123",
            "email": "Ada@Example.com",
            "verified_email": True,
            "name": "Ada Lovelace",
            "given_name": "Ada",
            "family_name": "Lovelace",
            "picture": "https://example.com/ada.png",
        }
        self.facebook_user = {"id": "fb-42", "name": "Grace Hopper", "email": "grace@example.com"}

    def handler(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if request.url.path.endswith("/token") or "access_token" in request.url.path:
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            self.token_requests.append(form)
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_grant"})
            if self.token_body is not None:
                return httpx.Response(200, text=self.token_body)
            # Authorization codes are single use
            if form.get("code") in self.used_codes:
                return httpx.Response(400, json={"error": "invalid_grant"})
            self.used_codes.add(form.get("code"))
            return httpx.Response(200, json={"access_token": f"access-{host}", "token_type": "Bearer"})
        self.userinfo_requests += 1
        if "facebook" in host:
            return httpx.Response(200, json=self.facebook_user)
        return httpx.Response(200, json=self.google_user)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def session_store() -> MemoryOAuthSessionStore:
    return MemoryOAuthSessionStore(ttl_seconds=600)


@pytest.fixture
def app(settings, session_store, session_factory, providers):
    from beout.main import create_app

    return create_app(
        settings,
        session_store=session_store,
        session_factory=session_factory,
        http_client=providers.client(),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
