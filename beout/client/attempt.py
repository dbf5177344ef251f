"""One in-flight login, awaited as a single ``completion()``.

The result can arrive by deep link (pushed by the OS when the browser hands
control back to the app) or by polling the backend. Whichever resolves first
wins; the other path is torn down. Exactly one terminal transition happens,
and anything arriving after it is dropped.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable
from urllib.parse import parse_qsl, urlsplit

from beout.client.api import AuthApiClient
from beout.client.platform import DeepLinkHandler, Unsubscribe
from beout.exceptions import (
    AuthError,
    AuthTimeout,
    BackendUnreachable,
    ProviderDenied,
    SessionExpired,
    StateMismatch,
    error_for_code,
)
from beout.schemas.identity import LoginResult

logger = logging.getLogger(__name__)

LOGIN_TIMEOUT_SECONDS = 300.0
POLL_INTERVAL_SECONDS = 2.0


class AttemptState(str, enum.Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_PROVIDER = "awaiting_provider"
    DEEP_LINK_RECEIVED = "deep_link_received"
    POLLING_SUCCESS = "polling_success"
    POLLING_ERROR = "polling_error"
    TIMEOUT = "timeout"
    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATES = (AttemptState.SUCCESS, AttemptState.FAILURE)


class PendingLoginAttempt:
    """Races deep-link delivery against a poll fallback and a fixed timeout.

    ``challenge`` enables polling (server-relay flow). ``exchange`` is used
    when the deep link carries an authorization code the app must redeem
    itself (direct flow). ``expected_state`` is compared with the ``state``
    of every deep link; a mismatch aborts before any exchange.
    """

    def __init__(
        self,
        api: AuthApiClient,
        expected_state: str,
        *,
        challenge: str | None = None,
        exchange: Callable[[str], Awaitable[LoginResult]] | None = None,
        subscribe_deep_links: Callable[[DeepLinkHandler], Unsubscribe] | None = None,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = LOGIN_TIMEOUT_SECONDS,
    ) -> None:
        self._api = api
        self._expected_state = expected_state
        self._challenge = challenge
        self._exchange = exchange
        self._subscribe = subscribe_deep_links
        self._poll_interval = poll_interval
        self._timeout = timeout

        self.state = AttemptState.IDLE
        self.transitions: list[AttemptState] = [AttemptState.IDLE]
        self._future: asyncio.Future | None = None
        self._deadline: float | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._tasks: set[asyncio.Task] = set()
        self._poll_lock = asyncio.Lock()

    @property
    def done(self) -> bool:
        return self._future is not None and self._future.done()

    def _set_state(self, state: AttemptState) -> None:
        self.state = state
        self.transitions.append(state)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _finish(self, via: AttemptState, result: LoginResult | None = None, error: AuthError | None = None) -> bool:
        if self._future is None or self._future.done():
            logger.debug("Ignoring %s after the attempt finished", via.value)
            return False
        if via not in TERMINAL_STATES:
            self._set_state(via)
        if error is None:
            self._set_state(AttemptState.SUCCESS)
            self._future.set_result(result)
        else:
            self._set_state(AttemptState.FAILURE)
            self._future.set_exception(error)
        return True

    def mark_initiating(self) -> None:
        self._set_state(AttemptState.INITIATING)

    def start(self) -> None:
        """Begin listening. Call before opening the browser so no link is missed."""
        if self._future is not None:
            return
        loop = asyncio.get_running_loop()
        self._future = loop.create_future()
        self._deadline = loop.time() + self._timeout
        if self._subscribe is not None:
            self._unsubscribe = self._subscribe(self._on_deep_link)
        if self._challenge is not None:
            self._spawn(self._poll_loop())
        self._set_state(AttemptState.AWAITING_PROVIDER)

    async def completion(self) -> LoginResult:
        """Wait for the login to resolve; raises the AuthError it failed with."""
        self.start()
        remaining = max(0.0, self._deadline - asyncio.get_running_loop().time())
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=remaining)
        except asyncio.TimeoutError:
            self._finish(AttemptState.TIMEOUT, error=AuthTimeout())
            return self._future.result()
        finally:
            await self.close()

    def cancel(self) -> None:
        """User abandoned the sign-in."""
        self._finish(AttemptState.FAILURE, error=ProviderDenied("Sign-in was cancelled."))

    async def close(self) -> None:
        """Remove the deep-link listener and stop polling."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._future is not None and not self._future.done():
            self._future.cancel()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _on_deep_link(self, url: str) -> None:
        if self.done:
            logger.debug("Ignoring deep link after the attempt finished")
            return
        self._spawn(self._handle_deep_link(url))

    async def _handle_deep_link(self, url: str) -> None:
        params = dict(parse_qsl(urlsplit(url).query))
        if params.get("state") != self._expected_state:
            logger.warning("Deep link state does not match the open attempt; aborting")
            self._finish(AttemptState.DEEP_LINK_RECEIVED, error=StateMismatch())
            return

        if params.get("error"):
            error = error_for_code(params["error"])
            if type(error) is AuthError:
                # provider codes such as access_denied
                error = ProviderDenied()
            self._finish(AttemptState.DEEP_LINK_RECEIVED, error=error)
            return

        code = params.get("code")
        if code and self._exchange is not None:
            try:
                result = await self._exchange(code)
            except AuthError as e:
                self._finish(AttemptState.DEEP_LINK_RECEIVED, error=e)
                return
            self._finish(AttemptState.DEEP_LINK_RECEIVED, result=result)
            return

        if self._challenge is not None:
            try:
                await self._poll_once(AttemptState.DEEP_LINK_RECEIVED)
            except BackendUnreachable as e:
                # the poll loop keeps trying
                logger.warning("Poll after deep link failed: %s", e)
            except AuthError as e:
                self._finish(AttemptState.POLLING_ERROR, error=e)

    async def _poll_once(self, via: AttemptState) -> None:
        # One poll at a time: the backend hands a result out exactly once
        async with self._poll_lock:
            if self.done:
                return
            outcome = await self._api.poll(self._challenge)
            if outcome.status == "completed" and outcome.token and outcome.user:
                self._finish(via, result=LoginResult(token=outcome.token, user=outcome.user))
            elif outcome.status == "error":
                self._finish(AttemptState.POLLING_ERROR, error=error_for_code(outcome.error))
            elif outcome.status == "expired":
                self._finish(AttemptState.POLLING_ERROR, error=SessionExpired())

    async def _poll_loop(self) -> None:
        while not self.done:
            await asyncio.sleep(self._poll_interval)
            try:
                await self._poll_once(AttemptState.POLLING_SUCCESS)
            except BackendUnreachable as e:
                logger.warning("Poll failed, retrying: %s", e)
            except AuthError as e:
                self._finish(AttemptState.POLLING_ERROR, error=e)
