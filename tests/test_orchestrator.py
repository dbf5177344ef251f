"""Tests for client-side flow selection and session establishment."""

from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from beout.client.credential_cache import SecureCredentialCache
from beout.client.orchestrator import AuthOrchestrator
from beout.client.platform import (
    CredentialProviderUnavailable,
    DeepLinkRouter,
    NativeCredential,
    NativeShellPlatform,
    WebPlatform,
)
from beout.client.storage import MemoryKeyValueStore
from beout.exceptions import (
    BackendUnreachable,
    ConfigurationError,
    NoBrowserAvailable,
    ProviderDenied,
    SessionRejected,
    StateMismatch,
)
from beout.schemas.auth import MeResponse, PollResponse, ProfileResponse, UserSummary
from beout.schemas.identity import LoginResult
from beout.services import pkce

USER = UserSummary(id="7b0f4a52-2d7e-4c55-9f0e-3f8f1c1f9a11", email="ada@example.com", role="user")
RESULT = LoginResult(token="session-token", user=USER)


@pytest.fixture
def api() -> MagicMock:
    api = MagicMock()
    api.login_url.side_effect = lambda provider: f"https://api.beout.test/oauth/{provider}/login"
    api.start_url.side_effect = lambda challenge, session: f"https://api.beout.test/mobile/start?challenge={challenge}"
    api.register_session = AsyncMock()
    api.poll = AsyncMock(return_value=PollResponse(status="pending"))
    api.exchange_code = AsyncMock(return_value=RESULT)
    api.login_with_google_id_token = AsyncMock(return_value=RESULT)
    api.login_with_apple = AsyncMock(return_value=RESULT)
    api.me = AsyncMock(return_value=MeResponse(user=USER, profile=ProfileResponse(first_name="Ada")))
    return api


@pytest.fixture
def cache(clock) -> SecureCredentialCache:
    return SecureCredentialCache(MemoryKeyValueStore(), None, clock=clock)


@pytest.fixture
def router() -> DeepLinkRouter:
    return DeepLinkRouter()


def _native(router, opener=None, **kwargs) -> NativeShellPlatform:
    return NativeShellPlatform(
        open_system_browser=opener or AsyncMock(),
        subscribe_deep_links=router.subscribe,
        **kwargs,
    )


def _orchestrator(platform, api, cache) -> AuthOrchestrator:
    return AuthOrchestrator(platform, api, cache, poll_interval=0.01, timeout=2.0)


class TestWebPlatform:
    @pytest.mark.asyncio
    async def test_sign_in_navigates(self, api, cache):
        navigate = MagicMock()
        orchestrator = _orchestrator(WebPlatform(navigate=navigate), api, cache)

        assert await orchestrator.sign_in("facebook") is None
        navigate.assert_called_once_with("https://api.beout.test/oauth/facebook/login")

    @pytest.mark.asyncio
    async def test_redirect_back_with_token(self, api, cache):
        orchestrator = _orchestrator(WebPlatform(navigate=MagicMock()), api, cache)
        await orchestrator.sign_in("google", remember_me=True)

        session = await orchestrator.complete_web_redirect("beout://oauth/success?token=session-token")

        assert session.user.email == "ada@example.com"
        assert session.profile.first_name == "Ada"
        assert orchestrator.is_authenticated
        api.me.assert_awaited_once_with("session-token")
        assert (await cache.get_stored()).token == "session-token"

    @pytest.mark.asyncio
    async def test_redirect_back_without_remember_me(self, api, cache):
        orchestrator = _orchestrator(WebPlatform(navigate=MagicMock()), api, cache)
        await orchestrator.sign_in("google", remember_me=False)
        await orchestrator.complete_web_redirect("beout://oauth/success?token=session-token")
        assert orchestrator.is_authenticated
        assert await cache.get_stored() is None

    @pytest.mark.asyncio
    async def test_redirect_back_with_error(self, api, cache):
        orchestrator = _orchestrator(WebPlatform(navigate=MagicMock()), api, cache)
        with pytest.raises(ProviderDenied):
            await orchestrator.complete_web_redirect("beout://oauth/failure?error=provider_denied")
        assert isinstance(orchestrator.last_error, ProviderDenied)
        assert not orchestrator.is_authenticated

    @pytest.mark.asyncio
    async def test_unrelated_url(self, api, cache):
        orchestrator = _orchestrator(WebPlatform(navigate=MagicMock()), api, cache)
        assert await orchestrator.complete_web_redirect("beout://home") is None


class TestRelayFlow:
    @pytest.mark.asyncio
    async def test_system_browser_and_poll(self, api, cache, router):
        opener = AsyncMock()
        api.poll.return_value = PollResponse(status="completed", token="session-token", user=USER)
        orchestrator = _orchestrator(_native(router, opener), api, cache)

        session = await orchestrator.sign_in("google")

        challenge, verifier = api.register_session.await_args.args
        assert pkce.is_valid_verifier(verifier)
        opener.assert_awaited_once_with(f"https://api.beout.test/mobile/start?challenge={challenge}")
        api.poll.assert_awaited_with(challenge)
        assert session.token == "session-token"
        assert (await cache.get_stored()).token == "session-token"
        assert len(router) == 0

    @pytest.mark.asyncio
    async def test_deep_link_resolves(self, api, cache, router):
        async def opener(url):
            api.poll.return_value = PollResponse(status="completed", token="session-token", user=USER)
            challenge = parse_qs(urlsplit(url).query)["challenge"][0]
            router.dispatch(f"beout://oauth/callback?state={challenge}")

        orchestrator = AuthOrchestrator(_native(router, opener), api, cache, poll_interval=60, timeout=2.0)
        session = await orchestrator.sign_in("google")
        assert session.user.id == USER.id

    @pytest.mark.asyncio
    async def test_no_browser(self, api, cache, router):
        opener = AsyncMock(side_effect=NoBrowserAvailable())
        orchestrator = _orchestrator(_native(router, opener), api, cache)

        with pytest.raises(NoBrowserAvailable):
            await orchestrator.sign_in("google")

        assert isinstance(orchestrator.last_error, NoBrowserAvailable)
        assert len(router) == 0

    @pytest.mark.asyncio
    async def test_backend_down_before_browser_opens(self, api, cache, router):
        api.register_session.side_effect = BackendUnreachable()
        opener = AsyncMock()
        orchestrator = _orchestrator(_native(router, opener), api, cache)
        with pytest.raises(BackendUnreachable):
            await orchestrator.sign_in("google")
        opener.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_facebook_is_not_available_natively(self, api, cache, router):
        orchestrator = _orchestrator(_native(router), api, cache)
        with pytest.raises(ConfigurationError):
            await orchestrator.sign_in("facebook")


class TestDirectFlow:
    @pytest.mark.asyncio
    async def test_app_exchanges_its_own_code(self, api, cache, router):
        opened = {}

        async def opener(url):
            params = parse_qs(urlsplit(url).query)
            opened.update({k: v[0] for k, v in params.items()})
            router.dispatch(f"com.beout.app:/oauth2redirect?code=auth-code&state={opened['state']}")

        platform = _native(router, opener, redirect_uri="com.beout.app:/oauth2redirect", client_id="ios-client")
        orchestrator = _orchestrator(platform, api, cache)

        session = await orchestrator.sign_in("google")

        assert session.token == "session-token"
        assert opened["client_id"] == "ios-client"
        code, verifier, redirect_uri, client_id = api.exchange_code.await_args.args
        assert code == "auth-code"
        assert pkce.verify_pair(verifier, opened["code_challenge"])
        assert (redirect_uri, client_id) == ("com.beout.app:/oauth2redirect", "ios-client")
        api.register_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_state_mismatch(self, api, cache, router):
        async def opener(url):
            router.dispatch("com.beout.app:/oauth2redirect?code=auth-code&state=forged")

        platform = _native(router, opener, redirect_uri="com.beout.app:/oauth2redirect", client_id="ios-client")
        orchestrator = _orchestrator(platform, api, cache)

        with pytest.raises(StateMismatch):
            await orchestrator.sign_in("google")
        api.exchange_code.assert_not_awaited()


class TestNativeCredentials:
    @pytest.mark.asyncio
    async def test_google_account_picker(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(return_value=NativeCredential(provider="google", identity_token="id-token"))
        opener = AsyncMock()
        orchestrator = _orchestrator(_native(router, opener, credential_provider=provider), api, cache)

        session = await orchestrator.sign_in("google")

        assert session.token == "session-token"
        api.login_with_google_id_token.assert_awaited_once_with("id-token")
        opener.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_google_picker_unavailable_falls_back_to_browser(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(side_effect=CredentialProviderUnavailable())
        opener = AsyncMock()
        api.poll.return_value = PollResponse(status="completed", token="session-token", user=USER)
        orchestrator = _orchestrator(_native(router, opener, credential_provider=provider), api, cache)

        await orchestrator.sign_in("google")

        opener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_apple(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(
            return_value=NativeCredential(
                provider="apple", identity_token="apple-token", nonce="n", given_name="Ada", family_name="Lovelace"
            )
        )
        orchestrator = _orchestrator(_native(router, credential_provider=provider), api, cache)

        await orchestrator.sign_in("apple")

        api.login_with_apple.assert_awaited_once_with("apple-token", nonce="n", given_name="Ada", family_name="Lovelace")

    @pytest.mark.asyncio
    async def test_apple_unavailable(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(side_effect=CredentialProviderUnavailable())
        orchestrator = _orchestrator(_native(router, credential_provider=provider), api, cache)
        with pytest.raises(ConfigurationError):
            await orchestrator.sign_in("apple")

    @pytest.mark.asyncio
    async def test_apple_cancelled(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(side_effect=ProviderDenied())
        orchestrator = _orchestrator(_native(router, credential_provider=provider), api, cache)
        with pytest.raises(ProviderDenied):
            await orchestrator.sign_in("apple")


class TestEstablish:
    @pytest.mark.asyncio
    async def test_rejected_token_is_not_kept(self, api, cache, router):
        provider = MagicMock()
        provider.sign_in = AsyncMock(return_value=NativeCredential(provider="google", identity_token="id-token"))
        api.me.side_effect = SessionRejected()
        orchestrator = _orchestrator(_native(router, credential_provider=provider), api, cache)

        with pytest.raises(SessionRejected):
            await orchestrator.sign_in("google")

        assert not orchestrator.is_authenticated
        assert await cache.get_stored() is None


class TestRestoreSession:
    @pytest.mark.asyncio
    async def test_nothing_stored(self, api, cache, router):
        assert await _orchestrator(_native(router), api, cache).restore_session() is None
        api.me.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_valid(self, api, cache, router):
        await cache.store("session-token", USER.model_dump(mode="json", by_alias=True))
        session = await _orchestrator(_native(router), api, cache).restore_session()
        assert session.token == "session-token"
        assert session.profile.first_name == "Ada"

    @pytest.mark.asyncio
    async def test_rejected_clears(self, api, cache, router):
        await cache.store("session-token", USER.model_dump(mode="json", by_alias=True))
        api.me.side_effect = SessionRejected()
        assert await _orchestrator(_native(router), api, cache).restore_session() is None
        assert await cache.get_stored() is None

    @pytest.mark.asyncio
    async def test_offline_uses_cached_user(self, api, cache, router):
        await cache.store("session-token", USER.model_dump(mode="json", by_alias=True))
        api.me.side_effect = BackendUnreachable()
        session = await _orchestrator(_native(router), api, cache).restore_session()
        assert session.user.email == "ada@example.com"
        assert session.profile is None


class TestSignOut:
    @pytest.mark.asyncio
    async def test_sign_out(self, api, cache, router):
        await cache.store("session-token", USER.model_dump(mode="json", by_alias=True))
        orchestrator = _orchestrator(_native(router), api, cache)
        await orchestrator.restore_session()

        await orchestrator.sign_out()

        assert not orchestrator.is_authenticated
        assert await cache.get_stored() is None
