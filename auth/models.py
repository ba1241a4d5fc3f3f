"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond read-only views).
Dataclasses own domain shape; stores and services do the work.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES = ("student", "company", "admin")


@dataclass
class Account:
    """A registered identity.

    hashed_password is None for provider-only accounts (no local password).

    Token columns only ever hold HMAC digests; raw values are handed to the
    client once and never persisted. Each token pair (hash + expiry) is set
    and cleared together -- the store has no method that touches one half.
    """

    email: str
    full_name: str
    role: str = "student"  # "student", "company", "admin"
    id: int | None = None
    hashed_password: str | None = None  # None = provider-only account
    is_active: bool = True
    is_email_verified: bool = False
    verification_token_hash: str | None = None
    verification_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_expires_at: datetime | None = None
    refresh_token_hash: str | None = None
    refresh_expires_at: datetime | None = None
    provider: str | None = None  # "google", "linkedin"
    provider_id: str | None = None  # provider's stable subject
    profile_image: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None

    @property
    def has_session(self) -> bool:
        return self.refresh_token_hash is not None

    def public_profile(self) -> dict:
        """Fields safe to return to the account owner (no hashes, no expiries)."""
        return {
            "id": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "role": self.role,
            "isEmailVerified": self.is_email_verified,
            "isActive": self.is_active,
            "profileImage": self.profile_image,
            "provider": self.provider,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    account_id: int
    email: str
    role: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedRefreshToken:
    """Result of issuing or rotating a refresh token.

    raw goes into the cookie and is never stored; token_hash is what the
    store holds.
    """

    raw: str
    token_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class AuthSnapshot:
    """The per-account state the auth cache holds."""

    active: bool


@dataclass(frozen=True)
class ProviderIdentity:
    """Normalized result of an identity-provider callback.

    The session core only sees this shape; provider-specific parsing stays in
    auth/oauth.py.
    """

    provider: str
    provider_id: str
    email: str
    display_name: str = ""
    photo_url: str | None = None


@dataclass(frozen=True)
class AuthResult:
    """What a successful login-like flow hands back to the route layer."""

    account: Account
    access_token: str
    refresh: IssuedRefreshToken
