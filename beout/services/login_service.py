"""Turns a provider code or identity token into an application session.

Provider calls happen before the database transaction; the transaction only
covers user lookup/link/create, and the token is signed after it commits.
"""

import logging
import time

import httpx

from beout.exceptions import AuthError, ConfigurationError
from beout.metrics import logins_total, provider_request_duration_seconds
from beout.schemas.identity import IdentityAssertion, LoginResult
from beout.services.credential_verifier import AppleIdentityTokenVerifier, GoogleIdTokenVerifier
from beout.services.identity_service import IdentityResolver
from beout.services.oauth_providers import OAuthProvider
from beout.services.session_issuer import SessionIssuer

logger = logging.getLogger(__name__)


class LoginService:
    def __init__(
        self,
        providers: dict[str, OAuthProvider],
        resolver: IdentityResolver,
        issuer: SessionIssuer,
        http_client: httpx.AsyncClient,
        google_verifier: GoogleIdTokenVerifier,
        apple_verifier: AppleIdentityTokenVerifier,
    ) -> None:
        self.providers = providers
        self.resolver = resolver
        self.issuer = issuer
        self.http = http_client
        self.google_verifier = google_verifier
        self.apple_verifier = apple_verifier

    def provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None or not provider.configured:
            raise ConfigurationError(f"Provider {name!r} is not configured")
        return provider

    async def exchange_code(
        self,
        provider_name: str,
        code: str,
        redirect_uri: str,
        code_verifier: str | None = None,
        client_id: str | None = None,
        flow: str = "mobile",
    ) -> LoginResult:
        """Code + verifier -> provider tokens -> user info -> local user -> session token."""
        provider = self.provider(provider_name)
        try:
            provider.check_client_id(client_id)
            start = time.perf_counter()
            tokens = await provider.exchange_code(
                self.http,
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
                client_id=client_id,
            )
            provider_request_duration_seconds.labels(provider=provider.name, endpoint="token").observe(
                time.perf_counter() - start
            )
            assertion = await provider.fetch_identity(self.http, tokens["access_token"])
            result = await self.login_with_assertion(assertion, flow=flow, record=False)
        except AuthError as e:
            logins_total.labels(provider=provider.name, flow=flow, outcome=e.code).inc()
            raise
        logins_total.labels(provider=provider.name, flow=flow, outcome="success").inc()
        return result

    async def login_with_assertion(
        self, assertion: IdentityAssertion, flow: str = "native", record: bool = True
    ) -> LoginResult:
        user = await self.resolver.resolve(assertion)
        token = self.issuer.issue(user)
        if record:
            logins_total.labels(provider=assertion.provider, flow=flow, outcome="success").inc()
        return LoginResult(token=token, user=user)

    async def login_with_google_id_token(self, id_token: str, nonce: str | None = None) -> LoginResult:
        try:
            assertion = await self.google_verifier.verify(id_token, nonce=nonce)
        except AuthError as e:
            logins_total.labels(provider="google", flow="native", outcome=e.code).inc()
            raise
        return await self.login_with_assertion(assertion)

    async def login_with_apple_token(
        self,
        identity_token: str,
        nonce: str | None = None,
        given_name: str | None = None,
        family_name: str | None = None,
    ) -> LoginResult:
        try:
            assertion = await self.apple_verifier.verify(
                identity_token, nonce=nonce, given_name=given_name, family_name=family_name
            )
        except AuthError as e:
            logins_total.labels(provider="apple", flow="native", outcome=e.code).inc()
            raise
        return await self.login_with_assertion(assertion)
