"""HTTP client for the BeOut auth endpoints."""

import logging
from urllib.parse import urlencode

import httpx

from beout.exceptions import (
    AuthError,
    BackendUnreachable,
    SessionRejected,
    TokenExchangeFailed,
    error_for_code,
)
from beout.schemas.auth import LoginResponse, MeResponse, PollResponse
from beout.schemas.identity import LoginResult

logger = logging.getLogger(__name__)


class AuthApiClient:
    """Thin async wrapper; every failure comes back as an AuthError."""

    def __init__(self, base_url: str, http_client: httpx.AsyncClient | None = None, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def login_url(self, provider: str) -> str:
        return f"{self.base_url}/oauth/{provider}/login"

    def start_url(self, challenge: str, session: str) -> str:
        return f"{self.base_url}/mobile/start?{urlencode({'session': session, 'challenge': challenge})}"

    async def _request(
        self,
        method: str,
        path: str,
        default_error: type[AuthError] = AuthError,
        **kwargs,
    ) -> dict:
        try:
            response = await self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TransportError as e:
            raise BackendUnreachable(reason=type(e).__name__) from e

        if response.status_code >= 500:
            raise BackendUnreachable(status=response.status_code)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            code = body.get("error") if isinstance(body, dict) else None
            if code:
                raise error_for_code(code)
            raise default_error(status=response.status_code)
        return response.json()

    async def register_session(self, challenge: str, code_verifier: str, client_id: str | None = None) -> None:
        payload = {"challenge": challenge, "codeVerifier": code_verifier}
        if client_id:
            payload["clientId"] = client_id
        await self._request("POST", "/mobile/session", json=payload)

    async def poll(self, challenge: str) -> PollResponse:
        data = await self._request("GET", f"/mobile/poll/{challenge}")
        return PollResponse.model_validate(data)

    async def exchange_code(
        self,
        code: str,
        code_verifier: str,
        redirect_uri: str,
        client_id: str | None = None,
    ) -> LoginResult:
        payload = {"code": code, "codeVerifier": code_verifier, "redirectUri": redirect_uri}
        if client_id:
            payload["clientId"] = client_id
        data = await self._request("POST", "/mobile/google/token", TokenExchangeFailed, json=payload)
        return _login_result(data)

    async def login_with_google_id_token(self, id_token: str) -> LoginResult:
        data = await self._request("POST", "/oauth/google/mobile-callback", TokenExchangeFailed, json={"idToken": id_token})
        return _login_result(data)

    async def login_with_apple(
        self,
        identity_token: str,
        nonce: str | None = None,
        given_name: str | None = None,
        family_name: str | None = None,
    ) -> LoginResult:
        payload = {
            "identityToken": identity_token,
            "nonce": nonce,
            "givenName": given_name,
            "familyName": family_name,
        }
        data = await self._request("POST", "/mobile/apple/token", TokenExchangeFailed, json=payload)
        return _login_result(data)

    async def me(self, token: str) -> MeResponse:
        data = await self._request(
            "GET",
            "/auth/me",
            SessionRejected,
            headers={"Authorization": f"Bearer {token}"},
        )
        return MeResponse.model_validate(data)


def _login_result(data: dict) -> LoginResult:
    parsed = LoginResponse.model_validate(data)
    return LoginResult(token=parsed.token, user=parsed.user)
