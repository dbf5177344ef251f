"""Mobile and desktop-shell login endpoints.

Server-relay flow: the app registers (or lets the server generate) a PKCE
verifier under an unguessable challenge, opens ``/mobile/start`` in the system
browser, and then waits for either the deep link fired by the relay page or
its own ``/mobile/poll/{challenge}`` loop. The result is delivered exactly once.

Direct flow: the app owns PKCE end to end and posts the code it received on
its deep link to ``/mobile/google/token`` (alias ``/exchange-mobile-token``).
"""

import html
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, RedirectResponse

from beout.config import Settings
from beout.dependencies import get_app_settings, get_login_service, get_session_store
from beout.exceptions import AuthError, InvalidChallenge
from beout.routers.oauth import with_query
from beout.schemas.auth import (
    AppleTokenRequest,
    CodeExchangeRequest,
    LoginResponse,
    MobileSessionRequest,
    MobileSessionResponse,
    PollResponse,
)
from beout.services import pkce
from beout.services.login_service import LoginService
from beout.services.oauth_session_store import OAuthSessionStore

logger = logging.getLogger(__name__)
router = APIRouter(tags=["mobile"])

_PAGE = """<!DOCTYPE html>
<html>
  <head>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <title>{title}</title>
  </head>
  <body style="font-family: sans-serif; text-align: center; padding: 50px 20px;">
    <h2>{title}</h2>
    <p>{message}</p>
    {action}
  </body>
</html>
"""


def _page(title: str, message: str, status_code: int = 200, deep_link: str | None = None) -> HTMLResponse:
    if deep_link:
        link = html.escape(deep_link, quote=True)
        action = f'<p><a href="{link}">Return to BeOut</a></p>'
    else:
        action = "<p>You can close this window and return to the app.</p>"
    body = _PAGE.format(title=html.escape(title), message=html.escape(message), action=action)
    return HTMLResponse(body, status_code=status_code)


@router.post("/mobile/session", response_model=MobileSessionResponse)
async def register_mobile_session(
    body: MobileSessionRequest,
    login: LoginService = Depends(get_login_service),
    store: OAuthSessionStore = Depends(get_session_store),
):
    """Register a client-generated PKCE verifier under its challenge key."""
    if not pkce.is_valid_verifier(body.code_verifier):
        raise HTTPException(status_code=400, detail="Invalid code verifier")
    login.provider("google").check_client_id(body.client_id)
    record = await store.create(
        body.challenge,
        flow="mobile",
        provider="google",
        code_verifier=body.code_verifier,
        client_id=body.client_id,
    )
    if record.code_verifier != body.code_verifier:
        raise InvalidChallenge("Challenge is already registered")
    return MobileSessionResponse(success=True)


@router.get("/mobile/start")
async def mobile_start(
    session: str | None = None,
    challenge: str | None = None,
    login: LoginService = Depends(get_login_service),
    store: OAuthSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
):
    """Begin a server-tracked Google login; the challenge doubles as OAuth state."""
    if not session or not challenge:
        raise HTTPException(status_code=400, detail="Missing session or challenge parameter")

    google = login.provider("google")
    record = await store.get(challenge)
    if record is None:
        pair = pkce.generate()
        record = await store.create(
            challenge,
            flow="mobile",
            provider="google",
            code_verifier=pair.code_verifier,
            session_hint=session,
        )
    if record.flow != "mobile" or record.status != "pending":
        raise InvalidChallenge("Challenge is not awaiting a provider response")

    url = google.authorize_url(
        settings.callback_url("/mobile/google/callback"),
        state=challenge,
        code_challenge=pkce.challenge_for(record.code_verifier),
        prompt="select_account",
        client_id=record.client_id,
    )
    return RedirectResponse(url, status_code=302)


@router.get("/mobile/google/callback", response_class=HTMLResponse)
async def mobile_google_callback(
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    login: LoginService = Depends(get_login_service),
    store: OAuthSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
):
    """Provider redirect target for the server-relay flow."""
    if error:
        logger.info("Mobile sign-in denied at provider: %s", error)
        if state:
            await store.fail(state, "provider_denied")
        return _page("Sign-in cancelled", "Sign-in was cancelled at Google.", status_code=400)

    record = await store.get(state) if state else None
    if record is None or record.flow != "mobile":
        logger.warning("Mobile callback with unknown or expired state")
        return _page("Session error", "This sign-in session was not found or has expired.", status_code=400)
    if record.status != "pending":
        return _page("Session error", "This sign-in session has already been used.", status_code=400)

    if not code:
        await store.fail(state, "token_exchange_failed")
        return _page("Sign-in failed", "No authorization code was received.", status_code=400)

    try:
        result = await login.exchange_code(
            "google",
            code=code,
            redirect_uri=settings.callback_url("/mobile/google/callback"),
            code_verifier=record.code_verifier,
            client_id=record.client_id,
            flow="mobile",
        )
    except AuthError as e:
        logger.warning("Mobile sign-in failed: %s", e)
        await store.fail(state, e.code)
        return _page("Sign-in failed", e.user_message, status_code=400)

    if not await store.complete(state, result):
        # Expired (or resolved elsewhere) while the exchange was in flight
        return _page("Session error", "This sign-in session has expired. Please try again.", status_code=400)

    return _page(
        "Signed in",
        f"Welcome, {result.user.email}! You can return to the app.",
        deep_link=with_query(settings.app_deep_link_url, state=state),
    )


@router.get("/mobile/poll/{challenge}", response_model=PollResponse, response_model_exclude_none=True)
async def mobile_poll(
    challenge: str,
    store: OAuthSessionStore = Depends(get_session_store),
):
    """Report a login attempt's status; a finished attempt is returned once."""
    outcome = await store.poll(challenge)
    if outcome.status == "completed" and outcome.result:
        return PollResponse(status="completed", user=outcome.result.user, token=outcome.result.token)
    return PollResponse(status=outcome.status, error=outcome.error)


@router.post("/mobile/google/token", response_model=LoginResponse)
@router.post("/exchange-mobile-token", response_model=LoginResponse)
async def mobile_google_token(
    body: CodeExchangeRequest,
    login: LoginService = Depends(get_login_service),
):
    """Exchange a code the app received on its own deep link, with its own verifier."""
    if not pkce.is_valid_verifier(body.code_verifier):
        raise HTTPException(status_code=400, detail="Invalid code verifier")
    result = await login.exchange_code(
        "google",
        code=body.code,
        redirect_uri=body.redirect_uri,
        code_verifier=body.code_verifier,
        client_id=body.client_id,
        flow="mobile",
    )
    return LoginResponse(token=result.token, user=result.user)


@router.post("/mobile/apple/token", response_model=LoginResponse)
async def mobile_apple_token(
    body: AppleTokenRequest,
    login: LoginService = Depends(get_login_service),
):
    result = await login.login_with_apple_token(
        body.identity_token,
        nonce=body.nonce,
        given_name=body.given_name,
        family_name=body.family_name,
    )
    return LoginResponse(token=result.token, user=result.user)
