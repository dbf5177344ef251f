"""Authentication error taxonomy shared by the API and the client.

Every error carries a stable ``code`` that is safe to surface to the UI,
a ``retryable`` flag, and free-form context that is only ever logged.
"""

from __future__ import annotations

import re
from typing import Any

_SECRET_PATTERNS = [
    # JWTs and JWT-like triples
    re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._~+/=-]+"),
    re.compile(r"(?i)((?:access_|refresh_|id_)?token|code_verifier|codeVerifier|code|client_secret|secret)=([^&\s\"']+)"),
    re.compile(r"(?i)(\"(?:access_token|refresh_token|id_token|token|client_secret|code_verifier)\"\s*:\s*)\"[^\"]*\""),
]


def redact_secrets(text: str) -> str:
    """Strip token fragments and credentials from a message."""
    text = _SECRET_PATTERNS[0].sub("[REDACTED_JWT]", text)
    text = _SECRET_PATTERNS[1].sub("Bearer [REDACTED]", text)
    text = _SECRET_PATTERNS[2].sub(r"\1=[REDACTED]", text)
    text = _SECRET_PATTERNS[3].sub(r'\1"[REDACTED]"', text)
    return text


class AuthError(Exception):
    """Base class for all authentication errors."""

    code = "auth_error"
    retryable = False
    default_message = "Sign-in failed. Please try again."

    def __init__(self, message: str | None = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Message that can be shown to the user."""
        return redact_secrets(self.message)

    def __str__(self) -> str:
        if self.context:
            ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return redact_secrets(f"{self.message} ({ctx})")
        return redact_secrets(self.message)


class ProviderDenied(AuthError):
    """The user cancelled or declined at the identity provider."""

    code = "provider_denied"
    default_message = "Sign-in was cancelled at the provider."


class InvalidAssertion(AuthError):
    """An identity token failed signature, audience, issuer or expiry checks."""

    code = "invalid_assertion"
    default_message = "The identity provider's response could not be verified. Please start sign-in again."


class StateMismatch(AuthError):
    """The returned state does not match any open login attempt."""

    code = "state_mismatch"
    default_message = "Sign-in could not be verified. Please start sign-in again."


class TokenExchangeFailed(AuthError):
    """The provider rejected the authorization code or was unreachable.

    Retryable only by restarting the whole flow: authorization codes are
    single-use.
    """

    code = "token_exchange_failed"
    retryable = True
    default_message = "Sign-in could not be completed. Please try again."

    def __init__(self, message: str | None = None, provider_error: str | None = None, **context: Any) -> None:
        super().__init__(message, **context)
        self.provider_error = provider_error


class SessionExpired(AuthError):
    """The login attempt is unknown, already delivered, or past its TTL."""

    code = "session_expired"
    retryable = True
    default_message = "Your sign-in session expired. Please start again."


class SessionRejected(AuthError):
    """The backend rejected the application session token."""

    code = "session_rejected"
    default_message = "Your session is no longer valid. Please sign in again."


class StorageUnavailable(AuthError):
    """A credential storage layer is not usable on this device."""

    code = "storage_unavailable"
    default_message = "Secure storage is unavailable."


class BackendUnreachable(AuthError):
    code = "backend_unreachable"
    retryable = True
    default_message = "Cannot reach the server. Check your connection and try again."


class NoBrowserAvailable(AuthError):
    """No system browser can be opened for the OAuth consent screen."""

    code = "no_browser_available"
    default_message = "No web browser is available to sign in. Install or enable a browser and try again."


class AuthTimeout(AuthError):
    code = "timeout"
    retryable = True
    default_message = "Sign-in timed out. Please try again."


class InvalidChallenge(AuthError):
    """A session challenge key is too short to be unguessable."""

    code = "invalid_challenge"
    default_message = "Invalid sign-in request."


class ConfigurationError(AuthError):
    code = "configuration_error"
    default_message = "The authentication service is misconfigured."


def error_for_code(code: str | None, message: str | None = None) -> AuthError:
    """Rebuild an AuthError from the ``error`` code the API returned."""
    for cls in _all_subclasses(AuthError):
        if cls.code == code:
            return cls(message)
    return AuthError(message)


def _all_subclasses(cls: type) -> list[type]:
    found = []
    for sub in cls.__subclasses__():
        found.append(sub)
        found.extend(_all_subclasses(sub))
    return found
