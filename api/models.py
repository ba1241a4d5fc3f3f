"""
API request and response models for the authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire format is camelCase (fullName, accessToken, isEmailVerified) to match
the frontend; Python attribute names stay snake_case via alias_generator.
Field limits here are transport sanity caps only -- the password policy,
email format and name sanitization are enforced by SessionService so that
every caller gets the same rules.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.models import Account
from auth.tokens import MAX_PASSWORD_BYTES

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup."""

    model_config = _REQUEST_CONFIG

    full_name: str = Field(min_length=1, max_length=100)
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES, json_schema_extra={"format": "password"})
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_BYTES)
    role: Literal["student", "company"] = "student"


class LoginRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)


class EmailRequest(BaseModel):
    """Body for POST /resend-verification and POST /forgot-password."""

    model_config = _REQUEST_CONFIG

    email: str = Field(min_length=1, max_length=255)


class ChangePasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    current_password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES)
    new_password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_BYTES)


class ResetPasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=MAX_PASSWORD_BYTES)
    confirm_password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_BYTES)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/v1/auth/profile. Omitted fields are unchanged."""

    model_config = _REQUEST_CONFIG

    full_name: Optional[str] = Field(default=None, max_length=100)
    profile_image: Optional[str] = Field(default=None, max_length=2048)


class AccountPatch(BaseModel):
    """Request body for PATCH /api/v1/auth/users/{id} (admin only)."""

    model_config = _REQUEST_CONFIG

    role: Optional[Literal["student", "company", "admin"]] = None
    is_active: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. No hashes, no token expiries."""

    model_config = _RESPONSE_CONFIG

    id: int
    full_name: str
    email: str
    role: str
    is_email_verified: bool
    is_active: bool
    profile_image: Optional[str] = None
    provider: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_account(cls, account: Account) -> "UserResponse":
        return cls.model_validate(account.public_profile())


class MessageResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    message: str


class SignupResponse(BaseModel):
    """201 body for signup: the new user, verification pending, no tokens."""

    model_config = _RESPONSE_CONFIG

    message: str
    user: UserResponse


class AuthResponse(BaseModel):
    """Body for login and verify-email. The refresh token travels in a cookie."""

    model_config = _RESPONSE_CONFIG

    message: str
    user: UserResponse
    access_token: str
    token_type: str = "bearer"
    expires_in: int


class AccessTokenResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Inner object of every error response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Envelope for every non-2xx response: {"error": {code, message, detail}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    database: str = "ok"
