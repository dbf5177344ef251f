"""PKCE (RFC 7636) verifier/challenge pairs and anti-CSRF state values."""

import base64
import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass

# 32 random bytes -> 43 base64url characters
_VERIFIER_BYTES = 32
_STATE_BYTES = 32
_VERIFIER_RE = re.compile(r"[A-Za-z0-9\-._~]{43,128}")


@dataclass(frozen=True)
class PKCEPair:
    """Code verifier and its S256 challenge.

    The verifier stays with whoever performs the final token exchange and
    is never logged; ``__repr__`` hides it.
    """

    code_verifier: str
    code_challenge: str
    method: str = "S256"

    def __repr__(self) -> str:
        return f"PKCEPair(code_challenge={self.code_challenge!r}, method={self.method!r})"


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def challenge_for(code_verifier: str) -> str:
    """Derive the S256 code challenge for a verifier."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def is_valid_verifier(code_verifier: str) -> bool:
    return bool(_VERIFIER_RE.fullmatch(code_verifier))


def generate() -> PKCEPair:
    """Generate a fresh pair from a 256-bit CSPRNG value."""
    verifier = _b64url(secrets.token_bytes(_VERIFIER_BYTES))
    return PKCEPair(code_verifier=verifier, code_challenge=challenge_for(verifier))


def new_state() -> str:
    """Random state/challenge key for one login attempt (256 bits)."""
    return secrets.token_urlsafe(_STATE_BYTES)


def verify_pair(code_verifier: str, code_challenge: str) -> bool:
    return hmac.compare_digest(challenge_for(code_verifier), code_challenge)
