"""BeOut auth API application factory."""

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from beout.config import Settings, get_settings
from beout.dependencies import create_engine, create_session_factory
from beout.exceptions import AuthError
from beout.middleware.error_handler import ErrorHandlerMiddleware, auth_error_handler
from beout.middleware.logging import LoggingMiddleware, setup_logging
from beout.middleware.rate_limit import RateLimitMiddleware
from beout.routers import auth, mobile, oauth
from beout.services.credential_verifier import AppleIdentityTokenVerifier, GoogleIdTokenVerifier
from beout.services.identity_service import IdentityResolver
from beout.services.login_service import LoginService
from beout.services.oauth_providers import build_providers
from beout.services.oauth_session_store import OAuthSessionStore, build_session_store, run_sweeper
from beout.services.session_issuer import SessionIssuer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings
    setup_logging(debug=settings.debug)
    logger.info("Starting BeOut auth API (env=%s, sessions=%s)", settings.app_env, settings.oauth_session_backend)

    sweeper = asyncio.create_task(run_sweeper(app.state.session_store, settings.oauth_session_sweep_seconds))

    yield

    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.session_store.close()
    if app.state.owns_http_client:
        await app.state.http_client.aclose()
    if app.state.engine is not None:
        await app.state.engine.dispose()
    logger.info("BeOut auth API shutting down")


def create_app(
    settings: Settings | None = None,
    *,
    session_store: OAuthSessionStore | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Fails immediately (``ConfigurationError``) when no session signing
    secret is configured.
    """
    if settings is None:
        settings = get_settings()

    issuer = SessionIssuer(settings)

    app = FastAPI(
        title="BeOut Auth API",
        description="Social login and session establishment for the BeOut app",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Collaborators
    engine = None
    if session_factory is None:
        engine = create_engine(settings)
        session_factory = create_session_factory(engine)
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.provider_http_timeout_seconds)
    if session_store is None:
        session_store = build_session_store(settings)

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.http_client = http_client
    app.state.owns_http_client = owns_http_client
    app.state.session_store = session_store
    app.state.session_issuer = issuer
    app.state.login_service = LoginService(
        providers=build_providers(settings),
        resolver=IdentityResolver(session_factory),
        issuer=issuer,
        http_client=http_client,
        google_verifier=GoogleIdTokenVerifier(settings, http_client),
        apple_verifier=AppleIdentityTokenVerifier(settings, http_client),
    )

    app.add_exception_handler(AuthError, auth_error_handler)

    # Middleware (order matters: outermost first)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RateLimitMiddleware, settings=settings)
    origins = settings.cors_origins
    allow_all = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if not allow_all else [],
        allow_origin_regex=r".*" if allow_all else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept"],
        max_age=600,
    )

    # Routers
    prefix = settings.api_prefix
    app.include_router(oauth.router, prefix=prefix)
    app.include_router(mobile.router, prefix=prefix)
    app.include_router(auth.router, prefix=prefix)

    @app.get("/")
    async def root():
        return {"status": "running", "service": "beout-auth", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "beout-auth"}

    @app.get("/health/ready")
    async def health_ready():
        """Deep health check: database, and Redis when sessions live there."""
        checks: dict = {}

        try:
            async with app.state.session_factory() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {type(e).__name__}"

        if settings.oauth_session_backend == "redis":
            try:
                r = aioredis.from_url(settings.redis_url, decode_responses=True)
                await r.ping()
                await r.aclose()
                checks["redis"] = "ok"
            except Exception as e:
                checks["redis"] = f"error: {type(e).__name__}"

        all_ok = all(v == "ok" for v in checks.values())
        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={"status": "ready" if all_ok else "degraded", "checks": checks},
        )

    # Prometheus instrumentation
    instrumentator = Instrumentator(
        excluded_handlers=["/health", "/health/ready", "/docs", "/redoc", "/openapi.json", "/metrics"],
    )
    instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint with multiprocess support."""
        from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess

        multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
        if multiproc_dir:
            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            data = generate_latest(registry)
        else:
            data = generate_latest()

        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


# Default app instance for uvicorn
app = create_app()
