"""Verification of third-party identity tokens (Google ID tokens, Apple identity tokens).

Tokens are verified against the issuer's published JWKS: RS256 signature,
issuer, audience, expiry and (when supplied) nonce. Any failure raises
InvalidAssertion, which is never retried.
"""

import asyncio
import hashlib
import hmac
import logging
import time

import httpx
from jose import JWTError, jwt

from beout.config import Settings
from beout.exceptions import InvalidAssertion, TokenExchangeFailed
from beout.schemas.identity import IdentityAssertion

logger = logging.getLogger(__name__)

GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("accounts.google.com", "https://accounts.google.com")
APPLE_JWKS_URL = "https://appleid.apple.com/auth/keys"
APPLE_ISSUER = "https://appleid.apple.com"

_DECODE_OPTIONS = {
    "verify_aud": False,  # checked against a list of client ids below
    "verify_at_hash": False,
    "require_exp": True,
    "require_iat": True,
    "leeway": 60,
}


class JWKSCache:
    """Caches an issuer's signing keys, refetching on TTL or unknown kid."""

    def __init__(self, url: str, http_client: httpx.AsyncClient, ttl_seconds: int = 3600) -> None:
        self._url = url
        self._http = http_client
        self._ttl = ttl_seconds
        self._keys: dict[str, dict] = {}
        self._fetched_at = 0.0
        self._lock = asyncio.Lock()

    async def _refresh(self) -> None:
        try:
            response = await self._http.get(self._url)
        except httpx.HTTPError as e:
            raise TokenExchangeFailed("Could not fetch issuer signing keys", url=self._url) from e
        if response.status_code != 200:
            raise TokenExchangeFailed(
                "Could not fetch issuer signing keys",
                provider_error=response.text,
                url=self._url,
            )
        try:
            keys = response.json()["keys"]
            self._keys = {k["kid"]: k for k in keys if isinstance(k, dict) and "kid" in k}
        except (ValueError, KeyError, TypeError) as e:
            raise TokenExchangeFailed(
                "Issuer returned malformed signing keys",
                provider_error=response.text,
                url=self._url,
            ) from e
        self._fetched_at = time.monotonic()
        logger.debug("Loaded %d signing keys from %s", len(self._keys), self._url)

    async def get_key(self, kid: str) -> dict:
        async with self._lock:
            stale = time.monotonic() - self._fetched_at > self._ttl
            if stale or kid not in self._keys:
                await self._refresh()
            key = self._keys.get(kid)
        if key is None:
            raise InvalidAssertion("Identity token signed with an unknown key", kid=kid)
        return key


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).lower() == "true"


def _check_audience(claims: dict, audiences: list[str]) -> None:
    aud = claims.get("aud")
    token_auds = aud if isinstance(aud, list) else [aud]
    if not any(a in audiences for a in token_auds):
        raise InvalidAssertion("Identity token audience mismatch")


def _check_nonce(claims: dict, nonce: str | None, hashed: bool) -> None:
    if nonce is None:
        return
    expected = hashlib.sha256(nonce.encode()).hexdigest() if hashed else nonce
    if not hmac.compare_digest(str(claims.get("nonce", "")), expected):
        raise InvalidAssertion("Identity token nonce mismatch")


async def _decode(token: str, jwks: JWKSCache, issuer) -> dict:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as e:
        raise InvalidAssertion("Malformed identity token") from e
    if header.get("alg") != "RS256":
        raise InvalidAssertion("Unexpected identity token algorithm", alg=header.get("alg"))
    key = await jwks.get_key(header.get("kid", ""))
    try:
        return jwt.decode(token, key, algorithms=["RS256"], issuer=issuer, options=_DECODE_OPTIONS)
    except JWTError as e:
        raise InvalidAssertion("Identity token verification failed", reason=type(e).__name__) from e


class GoogleIdTokenVerifier:
    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, jwks: JWKSCache | None = None) -> None:
        self._audiences = settings.google_audiences
        self._jwks = jwks or JWKSCache(GOOGLE_JWKS_URL, http_client, settings.jwks_cache_ttl_seconds)

    async def verify(self, id_token: str, nonce: str | None = None) -> IdentityAssertion:
        if not self._audiences:
            raise InvalidAssertion("Google sign-in is not configured")
        claims = await _decode(id_token, self._jwks, list(GOOGLE_ISSUERS))
        _check_audience(claims, self._audiences)
        _check_nonce(claims, nonce, hashed=False)
        if not claims.get("sub") or not claims.get("email"):
            raise InvalidAssertion("Google ID token has no subject or email")
        return IdentityAssertion(
            provider="google",
            provider_user_id=str(claims["sub"]),
            email=claims["email"].lower(),
            email_verified=_as_bool(claims.get("email_verified", False)),
            display_name=claims.get("name"),
            avatar_url=claims.get("picture"),
            given_name=claims.get("given_name"),
            family_name=claims.get("family_name"),
        )


class AppleIdentityTokenVerifier:
    """Apple only sends the user's name to the app on first sign-in, so the
    client forwards it alongside the token."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, jwks: JWKSCache | None = None) -> None:
        self._audiences = settings.apple_audiences
        self._jwks = jwks or JWKSCache(APPLE_JWKS_URL, http_client, settings.jwks_cache_ttl_seconds)

    async def verify(
        self,
        identity_token: str,
        nonce: str | None = None,
        given_name: str | None = None,
        family_name: str | None = None,
    ) -> IdentityAssertion:
        claims = await _decode(identity_token, self._jwks, APPLE_ISSUER)
        _check_audience(claims, self._audiences)
        _check_nonce(claims, nonce, hashed=True)
        if not claims.get("sub") or not claims.get("email"):
            raise InvalidAssertion("Apple identity token has no subject or email")
        display_name = " ".join(p for p in (given_name, family_name) if p) or None
        return IdentityAssertion(
            provider="apple",
            provider_user_id=str(claims["sub"]),
            email=claims["email"].lower(),
            email_verified=_as_bool(claims.get("email_verified", False)),
            display_name=display_name,
            given_name=given_name,
            family_name=family_name,
        )
