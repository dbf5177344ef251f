"""What the host environment can do for sign-in.

Detected once at startup and handed to the orchestrator; nothing below
sniffs the environment again at call time.
"""

import asyncio
import logging
import webbrowser
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Literal, Protocol

from beout.exceptions import NoBrowserAvailable

logger = logging.getLogger(__name__)

DeepLinkHandler = Callable[[str], None]
Unsubscribe = Callable[[], None]


class CredentialProviderUnavailable(Exception):
    """The platform account picker cannot be used on this device."""


@dataclass(frozen=True)
class NativeCredential:
    """Identity token handed back by a platform credential provider."""

    provider: Literal["google", "apple"]
    identity_token: str
    nonce: str | None = None
    given_name: str | None = None
    family_name: str | None = None


class CredentialProvider(Protocol):
    async def sign_in(self, provider: str) -> NativeCredential:
        """Run the native account picker.

        Raises CredentialProviderUnavailable when the picker cannot run and
        ProviderDenied when the user dismisses it.
        """
        ...


class PlatformCapabilities:
    name = "unknown"


@dataclass
class WebPlatform(PlatformCapabilities):
    """Plain browser: sign-in is a full-page redirect through the backend."""

    navigate: Callable[[str], None]
    name: str = "web"


@dataclass
class NativeShellPlatform(PlatformCapabilities):
    """Desktop or mobile shell with a system browser and a custom URL scheme.

    ``redirect_uri`` and ``client_id`` enable the direct flow, where the
    provider redirects straight to the app and the app exchanges the code
    itself. Without them the server-relay flow is used.
    """

    open_system_browser: Callable[[str], Awaitable[None]]
    subscribe_deep_links: Callable[[DeepLinkHandler], Unsubscribe]
    credential_provider: CredentialProvider | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    name: str = "native"

    @property
    def supports_direct_pkce(self) -> bool:
        return bool(self.redirect_uri and self.client_id)


async def open_with_webbrowser(url: str) -> None:
    """Open ``url`` in the user's default browser, never an embedded view."""
    loop = asyncio.get_running_loop()
    opened = await loop.run_in_executor(None, webbrowser.open, url)
    if not opened:
        raise NoBrowserAvailable()


@dataclass
class DeepLinkRouter:
    """Fan-out for deep links received by the shell (URL scheme handler)."""

    _handlers: list[DeepLinkHandler] = field(default_factory=list)

    def subscribe(self, handler: DeepLinkHandler) -> Unsubscribe:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def dispatch(self, url: str) -> None:
        for handler in list(self._handlers):
            try:
                handler(url)
            except Exception:
                logger.exception("Deep link handler failed")

    def __len__(self) -> int:
        return len(self._handlers)
