"""Auth request/response schemas.

Field names on the wire are camelCase, matching the mobile and web clients.
"""

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UserSummary(CamelModel):
    id: str
    email: str
    role: str
    is_verified: bool = False
    provider: str | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None


class LoginResponse(CamelModel):
    token: str
    user: UserSummary


class GoogleIdTokenRequest(CamelModel):
    id_token: str = Field(..., min_length=1)


class AppleTokenRequest(CamelModel):
    identity_token: str = Field(..., min_length=1)
    authorization_code: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    nonce: str | None = None


class CodeExchangeRequest(CamelModel):
    code: str = Field(..., min_length=1)
    code_verifier: str = Field(..., min_length=43, max_length=128)
    redirect_uri: str = Field(..., min_length=1)
    client_id: str | None = None


class MobileSessionRequest(CamelModel):
    challenge: str = Field(..., min_length=22, max_length=256)
    code_verifier: str = Field(..., min_length=43, max_length=128)
    client_id: str | None = None


class MobileSessionResponse(CamelModel):
    success: bool = True


class PollResponse(CamelModel):
    status: Literal["pending", "completed", "error", "expired"]
    user: UserSummary | None = None
    token: str | None = None
    error: str | None = None


class ProfileResponse(CamelModel):
    first_name: str = ""
    last_name: str = ""
    phone: str | None = None
    date_of_birth: date | None = None
    street_address: str | None = None
    city: str | None = None
    postal_code: str | None = None
    country: str | None = None


class MeResponse(CamelModel):
    user: UserSummary
    profile: ProfileResponse | None = None
