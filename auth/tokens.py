"""
auth/tokens.py -- JWT access tokens, password hashing, opaque-token digests,
and the refresh cookie.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry sub/user_id, email, role, iat,
       exp and iss. TokenIssuer takes the secret, lifetime and clock as
       constructor arguments so it is a pure function of its inputs.
       python-jose's own exp check reads the wall clock, so it is disabled
       and expiry is compared against the injected clock instead.

  Passwords: bcrypt directly (no passlib wrapper). The cost factor comes from
       Settings.bcrypt_rounds. _DUMMY_HASH enables timing equalization in
       SessionService.login() so response time does not reveal whether an
       email exists [C1].

  Opaque tokens (refresh, email verification, password reset):
       secrets.token_hex(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw) so lookup is an indexed equality match
       and a leaked database alone cannot be replayed. bcrypt's slowness is
       unnecessary for values with this much entropy.

Layer rule: no imports from api/, cache/, or notify/. Import from core/
is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from auth.errors import InvalidSignature, MalformedToken, TokenExpired
from auth.models import AccessClaims, Account
from core.clock import Clock, utc_now
from core.config import get_settings

logger = logging.getLogger("authcore.auth.tokens")

_ALGORITHM = "HS256"

REFRESH_COOKIE_NAME = "refresh_token"
REFRESH_COOKIE_PATH = "/api/v1/auth/refresh"

# Source of raw opaque tokens. Swappable in tests for deterministic values.
TokenFactory = Callable[[], str]


def new_opaque_token() -> str:
    """Return 32 random bytes as 64 hex characters (256 bits of entropy)."""
    return secrets.token_hex(32)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------

# bcrypt only reads the first 72 bytes of its input and bcrypt>=5 raises
# ValueError past that.
MAX_PASSWORD_BYTES = 72


def hash_password(plain: str, rounds: int | None = None) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt rejects inputs over MAX_PASSWORD_BYTES. validate_password() in the
    session service enforces that limit before anything reaches this function.
    """
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash -- treat as a mismatch, never as a 500.
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison whose result is discarded (unknown-email path)."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Opaque token digests
# ---------------------------------------------------------------------------


def digest_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string.

    Deterministic, so the store can look a presented token up by equality.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Issues and verifies signed access tokens. No I/O, no store access."""

    def __init__(
        self,
        secret_key: str,
        ttl_seconds: int,
        *,
        issuer: str = "authcore",
        clock: Clock = utc_now,
    ) -> None:
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._issuer = issuer
        self._clock = clock

    def issue(self, account: Account) -> str:
        """Encode a signed JWT carrying the account's id, email and role."""
        now = self._clock()
        payload = {
            "sub": str(account.id),
            "user_id": account.id,
            "email": account.email,
            "role": account.role,
            "iss": self._issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=self.ttl_seconds)).timestamp()),
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def verify(self, token: str) -> AccessClaims:
        """Verify signature and expiry, returning the claims.

        Raises:
            MalformedToken:   not a JWT, or required claims missing/mistyped.
            InvalidSignature: signature or algorithm does not match.
            TokenExpired:     exp is at or before the clock's now.
        """
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedToken() from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as exc:
            raise InvalidSignature() from exc

        account_id = payload.get("user_id")
        exp = payload.get("exp")
        if not isinstance(account_id, int) or not isinstance(exp, (int, float)):
            raise MalformedToken()
        if not isinstance(payload.get("email"), str) or not isinstance(payload.get("role"), str):
            raise MalformedToken()

        expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
        if expires_at <= self._clock():
            raise TokenExpired()

        return AccessClaims(
            account_id=account_id,
            email=payload["email"],
            role=payload["role"],
            expires_at=expires_at,
        )


# ---------------------------------------------------------------------------
# Refresh cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response, raw_token: str, max_age: int) -> None:
    """Write the raw refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    secure / samesite: production serves the SPA from another origin, so the
        cookie must be SameSite=None, which browsers only accept with Secure.
        Development stays on Lax over plain http.
    path: scoped to the refresh endpoint so the token is not attached to
        every API request.
    max_age: equals the refresh-token lifetime so both expire together.
    """
    production = get_settings().is_production
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        value=raw_token,
        httponly=True,
        secure=production,
        samesite="none" if production else "lax",
        path=REFRESH_COOKIE_PATH,
        max_age=max_age,
    )


def clear_refresh_cookie(response) -> None:
    production = get_settings().is_production
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path=REFRESH_COOKIE_PATH,
        httponly=True,
        secure=production,
        samesite="none" if production else "lax",
    )
