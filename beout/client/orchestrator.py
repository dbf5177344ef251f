"""Client-side sign-in controller.

Flow selection, by platform:

==============================================  ==========================================
Platform                                        Flow
==============================================  ==========================================
Web browser                                     full-page redirect through the backend
Native shell, credential provider available     native account picker -> identity token
Native shell, provider unavailable or declined  system browser + PKCE, deep link or polling
Native shell, no browser                        hard failure (``NoBrowserAvailable``)
==============================================  ==========================================

An embedded webview is never used for the consent screen.
"""

import logging
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlsplit

from beout.client.api import AuthApiClient
from beout.client.attempt import LOGIN_TIMEOUT_SECONDS, POLL_INTERVAL_SECONDS, PendingLoginAttempt
from beout.client.credential_cache import SecureCredentialCache
from beout.client.platform import (
    CredentialProviderUnavailable,
    NativeCredential,
    NativeShellPlatform,
    PlatformCapabilities,
    WebPlatform,
)
from beout.exceptions import (
    AuthError,
    BackendUnreachable,
    ConfigurationError,
    ProviderDenied,
    SessionRejected,
    error_for_code,
)
from beout.schemas.auth import ProfileResponse, UserSummary
from beout.schemas.identity import LoginResult
from beout.services import pkce
from beout.services.oauth_providers import google_provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthSession:
    token: str
    user: UserSummary
    profile: ProfileResponse | None = None


class AuthOrchestrator:
    def __init__(
        self,
        platform: PlatformCapabilities,
        api: AuthApiClient,
        cache: SecureCredentialCache,
        *,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = LOGIN_TIMEOUT_SECONDS,
    ) -> None:
        self.platform = platform
        self.api = api
        self.cache = cache
        self._poll_interval = poll_interval
        self._timeout = timeout
        self.session: AuthSession | None = None
        self.attempt: PendingLoginAttempt | None = None
        self.last_error: AuthError | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.session is not None

    async def sign_in(self, provider: str = "google", remember_me: bool = True) -> AuthSession | None:
        """Run the sign-in flow for this platform.

        Returns the session, or None on the web platform where the page
        navigates away and ``complete_web_redirect`` picks up on return.
        Failures are recorded in ``last_error`` and re-raised.
        """
        self.last_error = None
        if self.attempt is not None and not self.attempt.done:
            self.attempt.cancel()
        self.cache.set_remember_me(remember_me)

        try:
            if isinstance(self.platform, WebPlatform):
                self.platform.navigate(self.api.login_url(provider))
                return None
            if not isinstance(self.platform, NativeShellPlatform):
                raise ConfigurationError(f"Unsupported platform {self.platform.name!r}")

            result = await self._native_sign_in(provider)
            if result is None:
                result = await self._browser_sign_in(provider)
            return await self._establish(result.token, remember_me, user=result.user)
        except AuthError as e:
            self.last_error = e
            logger.info("Sign-in with %s failed: %s", provider, e.code)
            raise

    async def _native_sign_in(self, provider: str) -> LoginResult | None:
        credential_provider = self.platform.credential_provider
        if credential_provider is None or provider not in ("google", "apple"):
            return None
        try:
            credential: NativeCredential = await credential_provider.sign_in(provider)
        except CredentialProviderUnavailable as e:
            if provider == "apple":
                raise ConfigurationError("Sign in with Apple is not available on this device") from e
            logger.info("Native credential provider unavailable; using the system browser")
            return None
        except ProviderDenied:
            if provider == "apple":
                raise
            logger.info("Native account picker dismissed; using the system browser")
            return None

        if credential.provider == "apple":
            return await self.api.login_with_apple(
                credential.identity_token,
                nonce=credential.nonce,
                given_name=credential.given_name,
                family_name=credential.family_name,
            )
        return await self.api.login_with_google_id_token(credential.identity_token)

    async def _browser_sign_in(self, provider: str) -> LoginResult:
        if provider != "google":
            raise ConfigurationError(f"{provider} sign-in is not available in the app")
        platform: NativeShellPlatform = self.platform
        pair = pkce.generate()

        if platform.supports_direct_pkce:
            # The provider redirects straight to the app; the app redeems the code
            state = pkce.new_state()
            url = google_provider(platform.client_id).authorize_url(
                platform.redirect_uri, state, code_challenge=pair.code_challenge
            )

            async def exchange(code: str) -> LoginResult:
                return await self.api.exchange_code(code, pair.code_verifier, platform.redirect_uri, platform.client_id)

            attempt = PendingLoginAttempt(
                self.api,
                expected_state=state,
                exchange=exchange,
                subscribe_deep_links=platform.subscribe_deep_links,
                poll_interval=self._poll_interval,
                timeout=self._timeout,
            )
        else:
            # Server relay: the backend redeems the code and holds the result under the challenge
            challenge = pkce.new_state()
            attempt = PendingLoginAttempt(
                self.api,
                expected_state=challenge,
                challenge=challenge,
                subscribe_deep_links=platform.subscribe_deep_links,
                poll_interval=self._poll_interval,
                timeout=self._timeout,
            )
            attempt.mark_initiating()
            await self.api.register_session(challenge, pair.code_verifier)
            url = self.api.start_url(challenge, session=platform.name)

        self.attempt = attempt
        attempt.start()
        try:
            await platform.open_system_browser(url)
        except AuthError:
            await attempt.close()
            raise
        return await attempt.completion()

    async def _establish(self, token: str, remember_me: bool, user: UserSummary | None = None) -> AuthSession:
        """Persist the session and confirm it with the backend.

        A token that was stored but cannot be confirmed is wiped: the app is
        either signed in completely or signed out.
        """
        if remember_me and user is not None:
            await self.cache.store(token, user.model_dump(mode="json", by_alias=True))
        try:
            me = await self.api.me(token)
        except AuthError:
            await self.cache.clear()
            self.session = None
            raise
        if remember_me and user is None:
            await self.cache.store(token, me.user.model_dump(mode="json", by_alias=True))
        elif not remember_me:
            await self.cache.clear()
        self.session = AuthSession(token=token, user=me.user, profile=me.profile)
        return self.session

    async def complete_web_redirect(self, url: str) -> AuthSession | None:
        """Handle the app URL the backend redirected to after the web flow."""
        params = dict(parse_qsl(urlsplit(url).query))
        if params.get("error"):
            self.last_error = error_for_code(params["error"])
            raise self.last_error
        token = params.get("token")
        if not token:
            return None
        try:
            return await self._establish(token, self.cache.get_remember_me())
        except AuthError as e:
            self.last_error = e
            raise

    async def restore_session(self) -> AuthSession | None:
        """Silent sign-in from the credential cache on app launch."""
        stored = await self.cache.get_stored()
        if stored is None:
            return None
        try:
            me = await self.api.me(stored.token)
        except SessionRejected:
            logger.info("Stored session was rejected; signing out")
            await self.cache.clear()
            return None
        except BackendUnreachable:
            # Offline: trust the cached copy until the server says otherwise
            self.session = AuthSession(token=stored.token, user=UserSummary.model_validate(stored.user))
            return self.session
        self.session = AuthSession(token=stored.token, user=me.user, profile=me.profile)
        return self.session

    async def sign_out(self) -> None:
        if self.attempt is not None:
            self.attempt.cancel()
            await self.attempt.close()
            self.attempt = None
        await self.cache.clear()
        self.session = None
