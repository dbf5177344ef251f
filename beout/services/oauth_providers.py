"""Authorization-code providers (Google, Facebook): consent URL, code exchange, user info."""

import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode

import httpx

from beout.config import Settings
from beout.exceptions import InvalidAssertion, TokenExchangeFailed
from beout.schemas.identity import IdentityAssertion

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

FACEBOOK_AUTH_URL = "https://www.facebook.com/v18.0/dialog/oauth"
FACEBOOK_TOKEN_URL = "https://graph.facebook.com/v18.0/oauth/access_token"
FACEBOOK_USERINFO_URL = "https://graph.facebook.com/me?fields=id,name,email,picture"


@dataclass
class OAuthProvider:
    name: str
    authorize_endpoint: str
    token_endpoint: str
    userinfo_endpoint: str
    client_id: str
    client_secret: str = ""
    scopes: list[str] = field(default_factory=list)
    supports_pkce: bool = True
    extra_authorize_params: dict[str, str] = field(default_factory=dict)
    # Extra client ids (installed apps) codes may be redeemed for
    allowed_client_ids: list[str] = field(default_factory=list)

    @property
    def configured(self) -> bool:
        return bool(self.client_id)

    def check_client_id(self, client_id: str | None) -> None:
        """Reject a caller-supplied client id that is not one of ours."""
        if client_id is None or client_id == self.client_id or client_id in self.allowed_client_ids:
            return
        logger.warning("Rejected %s exchange for foreign client id", self.name)
        raise InvalidAssertion("Client id is not registered for this app", provider=self.name)

    def authorize_url(
        self,
        redirect_uri: str,
        state: str,
        code_challenge: str | None = None,
        prompt: str | None = None,
        client_id: str | None = None,
    ) -> str:
        params = {
            "client_id": client_id or self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            **self.extra_authorize_params,
        }
        if code_challenge and self.supports_pkce:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        if prompt:
            params["prompt"] = prompt
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(
        self,
        http: httpx.AsyncClient,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        client_id: str | None = None,
    ) -> dict:
        """Trade an authorization code for provider tokens."""
        data = {
            "client_id": client_id or self.client_id,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        # Native (installed-app) client ids have no secret
        if self.client_secret and (client_id is None or client_id == self.client_id):
            data["client_secret"] = self.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier

        try:
            response = await http.post(self.token_endpoint, data=data)
        except httpx.HTTPError as e:
            raise TokenExchangeFailed(provider=self.name, reason=type(e).__name__) from e

        if not response.is_success:
            logger.error("%s token exchange failed (status=%s)", self.name, response.status_code)
            raise TokenExchangeFailed(provider_error=response.text, provider=self.name, status=response.status_code)

        token_data = _json_body(response, self.name)
        if "access_token" not in token_data:
            raise TokenExchangeFailed(provider_error=response.text, provider=self.name)
        return token_data

    async def fetch_identity(self, http: httpx.AsyncClient, access_token: str) -> IdentityAssertion:
        try:
            response = await http.get(
                self.userinfo_endpoint,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeFailed("Failed to fetch user info", provider=self.name) from e

        if not response.is_success:
            raise TokenExchangeFailed(
                "Failed to fetch user info",
                provider_error=response.text,
                provider=self.name,
                status=response.status_code,
            )
        try:
            return self.parse_userinfo(_json_body(response, self.name))
        except (KeyError, TypeError, AttributeError) as e:
            raise TokenExchangeFailed(
                "Malformed user info", provider_error=response.text, provider=self.name
            ) from e

    def parse_userinfo(self, data: dict) -> IdentityAssertion:
        if self.name == "facebook":
            picture = (data.get("picture") or {}).get("data", {}).get("url")
            email = data.get("email") or f"{data['id']}@facebook.com"
            return IdentityAssertion(
                provider="facebook",
                provider_user_id=str(data["id"]),
                email=email.lower(),
                email_verified=bool(data.get("email")),
                display_name=data.get("name"),
                avatar_url=picture,
            )

        if not data.get("email"):
            raise TokenExchangeFailed("Provider returned no email address", provider=self.name)
        return IdentityAssertion(
            provider="google",
            provider_user_id=str(data["id"]),
            email=data["email"].lower(),
            email_verified=bool(data.get("verified_email", False)),
            display_name=data.get("name"),
            avatar_url=data.get("picture"),
            given_name=data.get("given_name"),
            family_name=data.get("family_name"),
        )


def _json_body(response: httpx.Response, provider: str) -> dict:
    """Decode a 2xx provider response; anything but a JSON object is a failed exchange."""
    try:
        data = response.json()
    except ValueError as e:
        raise TokenExchangeFailed("Provider returned a non-JSON response", provider_error=response.text, provider=provider) from e
    if not isinstance(data, dict):
        raise TokenExchangeFailed("Provider returned an unexpected response", provider_error=response.text, provider=provider)
    return data


def google_provider(client_id: str, client_secret: str = "", allowed_client_ids: list[str] | None = None) -> OAuthProvider:
    return OAuthProvider(
        name="google",
        authorize_endpoint=GOOGLE_AUTH_URL,
        token_endpoint=GOOGLE_TOKEN_URL,
        userinfo_endpoint=GOOGLE_USERINFO_URL,
        client_id=client_id,
        client_secret=client_secret,
        scopes=["openid", "email", "profile"],
        allowed_client_ids=list(allowed_client_ids or []),
    )


def build_providers(settings: Settings) -> dict[str, OAuthProvider]:
    return {
        "google": google_provider(
            settings.google_client_id,
            settings.google_client_secret.get_secret_value(),
            allowed_client_ids=settings.google_audiences,
        ),
        "facebook": OAuthProvider(
            name="facebook",
            authorize_endpoint=FACEBOOK_AUTH_URL,
            token_endpoint=FACEBOOK_TOKEN_URL,
            userinfo_endpoint=FACEBOOK_USERINFO_URL,
            client_id=settings.facebook_app_id,
            client_secret=settings.facebook_app_secret.get_secret_value(),
            scopes=["email", "public_profile"],
            supports_pkce=False,
        ),
    }
