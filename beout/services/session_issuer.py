"""Application session tokens (HS256 JWTs bound to the local user id)."""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from beout.config import Settings
from beout.exceptions import ConfigurationError, SessionExpired, SessionRejected
from beout.schemas.auth import UserSummary

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionClaims:
    user_id: uuid.UUID
    email: str
    role: str
    expires_at: datetime


class SessionIssuer:
    """Signs and verifies session tokens.

    There is no refresh token and no revocation list: a token is valid
    until ``exp``, and signing in again is the only way to renew it.
    """

    def __init__(self, settings: Settings) -> None:
        secret = settings.jwt_secret.get_secret_value()
        if not secret:
            raise ConfigurationError("JWT_SECRET is not set; refusing to issue session tokens")
        self._secret = secret
        self._algorithm = settings.jwt_algorithm
        self.ttl = timedelta(days=settings.session_token_ttl_days)

    def issue(self, user: UserSummary, now: datetime | None = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "userId": user.id,
            "email": user.email,
            "role": user.role,
            "iat": now,
            "exp": now + self.ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> SessionClaims:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except ExpiredSignatureError as e:
            raise SessionExpired("Session token expired") from e
        except JWTError as e:
            raise SessionRejected("Invalid session token") from e

        try:
            return SessionClaims(
                user_id=uuid.UUID(payload["userId"]),
                email=payload["email"],
                role=payload.get("role", "user"),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, ValueError) as e:
            raise SessionRejected("Invalid session token payload") from e
