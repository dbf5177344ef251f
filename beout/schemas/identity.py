"""Internal identity types passed between verifiers, providers and the resolver."""

from dataclasses import dataclass
from typing import Literal

from beout.schemas.auth import UserSummary

Provider = Literal["google", "apple", "facebook"]


@dataclass(frozen=True)
class IdentityAssertion:
    """A verified third-party identity, consumed once by the resolver."""

    provider: Provider
    provider_user_id: str
    email: str
    email_verified: bool = False
    display_name: str | None = None
    avatar_url: str | None = None
    given_name: str | None = None
    family_name: str | None = None


@dataclass(frozen=True)
class LoginResult:
    token: str
    user: UserSummary

    def as_dict(self) -> dict:
        return {"token": self.token, "user": self.user.model_dump(mode="json", by_alias=True)}
