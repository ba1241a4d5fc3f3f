"""
auth/verification.py -- Single-use email verification and password reset tokens.

Both token kinds follow the same shape: a 256-bit random value handed to the
user by email, an HMAC digest plus expiry stored on the account, and a
consume step that is a conditional UPDATE on (id, hash, unexpired). Exactly one
consume per token can succeed; resubmission fails with InvalidOrExpiredToken.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.errors import InvalidOrExpiredToken, ValidationError
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import TokenFactory, digest_token, new_opaque_token
from core.clock import Clock, utc_now

logger = logging.getLogger("authcore.auth.verification")


class VerificationTokenManager:
    """Issues and consumes email verification tokens."""

    def __init__(
        self,
        store: AccountStore,
        secret_key: str,
        ttl_seconds: int,
        *,
        clock: Clock = utc_now,
        token_factory: TokenFactory = new_opaque_token,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._token_factory = token_factory

    def new_token(self) -> tuple[str, str, datetime]:
        """Return (raw, hash, expires_at) without touching the store.

        Signup embeds the pair in the INSERT so a new account is never
        visible without its token.
        """
        raw = self._token_factory()
        return raw, digest_token(raw, self._secret_key), self._clock() + timedelta(seconds=self.ttl_seconds)

    def issue(self, account_id: int) -> str:
        """Store a fresh token on an unverified account and return the raw value."""
        raw, token_hash, expires_at = self.new_token()
        if not self._store.set_verification_token(account_id, token_hash, expires_at):
            raise ValidationError("Email is already verified.")
        return raw

    def consume(self, token: str) -> Account:
        """Mark the owning account verified and clear the token.

        Raises InvalidOrExpiredToken for unknown, expired, or already used
        tokens, and for the loser of two concurrent consumes.
        """
        if not token:
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        token_hash = digest_token(token, self._secret_key)
        now = self._clock()
        account = self._store.get_by_verification_hash(token_hash, now)
        if account is None or not self._store.consume_verification_token(account.id, token_hash, now):
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        logger.info("Email verified for account %s", account.id)
        verified = self._store.get_by_id(account.id)
        if verified is None:
            raise InvalidOrExpiredToken("Invalid or expired verification token.")
        return verified

    def resend(self, email: str) -> tuple[Account, str]:
        """Replace the token of an unverified account.

        Unknown and already verified emails both raise ValidationError; the
        resend endpoint documents a 400 for either.
        """
        account = self._store.get_by_email(email)
        if account is None:
            raise ValidationError("No account found with that email.")
        if account.is_email_verified:
            raise ValidationError("Email is already verified.")
        return account, self.issue(account.id)


class PasswordResetManager:
    """Issues and consumes password reset tokens."""

    def __init__(
        self,
        store: AccountStore,
        secret_key: str,
        ttl_seconds: int,
        *,
        clock: Clock = utc_now,
        token_factory: TokenFactory = new_opaque_token,
    ) -> None:
        self._store = store
        self._secret_key = secret_key
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._token_factory = token_factory

    def issue(self, account_id: int) -> str:
        raw = self._token_factory()
        expires_at = self._clock() + timedelta(seconds=self.ttl_seconds)
        self._store.set_reset_token(account_id, digest_token(raw, self._secret_key), expires_at)
        return raw

    def consume(self, token: str, new_password_hash: str) -> Account:
        """Install new_password_hash if token is current; also ends the session."""
        if not token:
            raise InvalidOrExpiredToken("Invalid or expired password reset token.")
        token_hash = digest_token(token, self._secret_key)
        now = self._clock()
        account = self._store.get_by_reset_hash(token_hash, now)
        if account is None or not self._store.consume_reset_token(account.id, token_hash, new_password_hash, now):
            raise InvalidOrExpiredToken("Invalid or expired password reset token.")
        logger.info("Password reset for account %s", account.id)
        return account
