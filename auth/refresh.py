"""
auth/refresh.py -- Opaque refresh tokens with single-use rotation.

One refresh pair per account. The raw value lives only in the client cookie;
the store holds HMAC(secret, raw) plus an expiry.

Rotation contract:
  rotate() succeeds only when the presented value hashes to the stored hash
  AND the stored expiry is in the future. The swap is a single conditional
  UPDATE (AccountStore.rotate_refresh_token) that compares against the old
  hash, so two concurrent rotations of the same raw value resolve to exactly
  one winner; the loser sees InvalidRefreshToken. After a successful rotation
  the previous raw value can never be used again.

Layer rule: no imports from api/, cache/, or notify/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import InvalidRefreshToken, TokenExpired
from auth.models import Account, IssuedRefreshToken
from auth.store import AccountStore
from auth.tokens import TokenFactory, digest_token, new_opaque_token
from core.clock import Clock, utc_now

logger = logging.getLogger("authcore.auth.refresh")


class RefreshTokenRotator:
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

    def hash_token(self, raw: str) -> str:
        return digest_token(raw, self._secret_key)

    def generate(self) -> tuple[str, str]:
        """Return a fresh (raw, hash) pair. Nothing is stored."""
        raw = self._token_factory()
        return raw, self.hash_token(raw)

    def _new_token(self) -> IssuedRefreshToken:
        raw, token_hash = self.generate()
        return IssuedRefreshToken(
            raw=raw,
            token_hash=token_hash,
            expires_at=self._clock() + timedelta(seconds=self.ttl_seconds),
        )

    def issue(self, account_id: int) -> IssuedRefreshToken:
        """Start a session: store a new pair, replacing any existing one."""
        token = self._new_token()
        self._store.set_refresh_token(account_id, token.token_hash, token.expires_at)
        return token

    def resolve(self, presented_raw: str) -> Account:
        """Return the account that currently holds presented_raw.

        Raises InvalidRefreshToken when no account holds it (never issued,
        already rotated, or revoked). Expiry is not checked here; rotate()
        owns that decision.
        """
        if not presented_raw:
            raise InvalidRefreshToken()
        account = self._store.get_by_refresh_hash(self.hash_token(presented_raw))
        if account is None:
            raise InvalidRefreshToken()
        return account

    def rotate(self, account_id: int, presented_raw: str) -> IssuedRefreshToken:
        """Swap the stored pair for a new one if presented_raw is current.

        Raises:
            TokenExpired:        presented_raw is the current value but its
                                 expiry has passed.
            InvalidRefreshToken: presented_raw is not (or no longer) current,
                                 including losing a concurrent rotation race.
        """
        old_hash = self.hash_token(presented_raw)
        now = self._clock()
        token = self._new_token()
        if self._store.rotate_refresh_token(account_id, old_hash, token.token_hash, token.expires_at, now):
            return token

        # Lost: find out why, for the error code only. The session is untouched.
        current = self._store.get_by_id(account_id)
        if current is not None and current.refresh_token_hash == old_hash:
            logger.info("Expired refresh token presented for account %s", account_id)
            raise TokenExpired("Refresh token expired.")
        logger.warning("Stale or unknown refresh token presented for account %s", account_id)
        raise InvalidRefreshToken()

    def revoke(self, account_id: int) -> None:
        """End the session. Safe to call when no session exists."""
        self._store.clear_refresh_token(account_id)
