"""Browser redirect flow for Google and Facebook, plus native Google ID-token login."""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import RedirectResponse

from beout.config import Settings
from beout.dependencies import get_app_settings, get_login_service, get_session_store
from beout.exceptions import AuthError
from beout.schemas.auth import GoogleIdTokenRequest, LoginResponse
from beout.services import pkce
from beout.services.login_service import LoginService
from beout.services.oauth_session_store import OAuthSessionStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oauth", tags=["oauth"])

REDIRECT_PROVIDERS = ("google", "facebook")


def with_query(url: str, **params: str) -> str:
    """Append query parameters to a URL that may already carry some."""
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}{urlencode(params)}"


def _check_provider(provider: str) -> None:
    if provider not in REDIRECT_PROVIDERS:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")


@router.get("/{provider}/login")
async def oauth_login(
    provider: str,
    login: LoginService = Depends(get_login_service),
    store: OAuthSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
):
    """Open a web login attempt and send the browser to the provider."""
    _check_provider(provider)
    oauth = login.provider(provider)

    state = pkce.new_state()
    pair = pkce.generate() if oauth.supports_pkce else None
    await store.create(
        state,
        flow="web",
        provider=provider,
        code_verifier=pair.code_verifier if pair else None,
    )

    redirect_uri = settings.callback_url(f"/oauth/{provider}/callback")
    url = oauth.authorize_url(
        redirect_uri,
        state,
        code_challenge=pair.code_challenge if pair else None,
    )
    return RedirectResponse(url, status_code=302)


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    login: LoginService = Depends(get_login_service),
    store: OAuthSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
):
    """Finish the web flow and hand the session token to the app."""
    _check_provider(provider)

    def failure(code_: str) -> RedirectResponse:
        return RedirectResponse(with_query(settings.app_failure_url, error=code_), status_code=302)

    if error:
        logger.info("%s sign-in denied at provider: %s", provider, error)
        if state:
            await store.discard(state)
        return failure("provider_denied")

    # State is single use: claimed before anything is sent to the provider
    record = await store.claim(state) if state else None
    if record is None or record.flow != "web" or record.provider != provider:
        logger.warning("%s callback with unknown or expired state", provider)
        return failure("state_mismatch")

    if not code:
        return failure("token_exchange_failed")

    redirect_uri = settings.callback_url(f"/oauth/{provider}/callback")
    try:
        result = await login.exchange_code(
            provider,
            code=code,
            redirect_uri=redirect_uri,
            code_verifier=record.code_verifier,
            flow="web",
        )
    except AuthError as e:
        logger.warning("%s web sign-in failed: %s", provider, e)
        return failure(e.code)

    return RedirectResponse(with_query(settings.app_success_url, token=result.token), status_code=302)


@router.post("/google/mobile-callback", response_model=LoginResponse)
async def google_id_token_login(
    body: GoogleIdTokenRequest,
    login: LoginService = Depends(get_login_service),
):
    """Sign in with an ID token from the platform's native Google account picker."""
    result = await login.login_with_google_id_token(body.id_token)
    return LoginResponse(token=result.token, user=result.user)
