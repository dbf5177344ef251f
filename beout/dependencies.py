"""FastAPI dependency injection.

Long-lived collaborators (engine, session store, login service) are built by
``create_app`` and kept on ``app.state``; nothing here is a module global.
"""

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from beout.config import Settings, get_settings
from beout.exceptions import SessionExpired, SessionRejected
from beout.services.login_service import LoginService
from beout.services.oauth_session_store import OAuthSessionStore
from beout.services.session_issuer import SessionClaims, SessionIssuer

security = HTTPBearer(auto_error=False)


def create_engine(settings: Settings) -> AsyncEngine:
    kwargs = {"echo": settings.debug, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(pool_size=20, max_overflow=10)
    return create_async_engine(settings.database_url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory


async def get_db(
    factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_store(request: Request) -> OAuthSessionStore:
    return request.app.state.session_store


def get_login_service(request: Request) -> LoginService:
    return request.app.state.login_service


def get_session_issuer(request: Request) -> SessionIssuer:
    return request.app.state.session_issuer


def get_app_settings(request: Request) -> Settings:
    return getattr(request.app.state, "settings", None) or get_settings()


async def get_current_session(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    issuer: SessionIssuer = Depends(get_session_issuer),
) -> SessionClaims:
    """Validate the bearer session token; the only thing collaborators trust."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return issuer.verify(credentials.credentials)
    except (SessionExpired, SessionRejected) as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.user_message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
