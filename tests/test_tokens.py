"""
tests/test_tokens.py -- Unit tests for access tokens, password hashing and
opaque-token digests (auth/tokens.py).

Covers:
  - issue/verify round trip returns the account's claims until the TTL elapses
  - Expiry is judged by the injected clock, boundary included
  - Wrong key, wrong issuer, garbage input, missing claims
  - bcrypt hash/verify, malformed stored hash
  - HMAC digest determinism and key dependence
"""

from __future__ import annotations

import re
from datetime import timedelta

import pytest
from jose import jwt

from auth.errors import InvalidSignature, MalformedToken, TokenExpired
from auth.models import Account
from auth.tokens import TokenIssuer, digest_token, hash_password, new_opaque_token, verify_password
from conftest import SECRET, FakeClock


def _account(**overrides) -> Account:
    fields = {"id": 7, "email": "ada@example.com", "full_name": "Ada", "role": "company"}
    fields.update(overrides)
    return Account(**fields)


class TestTokenIssuer:
    """verify(issue(account)) holds until the TTL elapses."""

    def test_round_trip_returns_matching_claims(self, clock: FakeClock) -> None:
        issuer = TokenIssuer(SECRET, 900, clock=clock)
        claims = issuer.verify(issuer.issue(_account()))
        assert claims.account_id == 7
        assert claims.email == "ada@example.com"
        assert claims.role == "company"
        assert claims.expires_at == clock() + timedelta(seconds=900)

    def test_valid_just_before_expiry(self, clock: FakeClock) -> None:
        issuer = TokenIssuer(SECRET, 900, clock=clock)
        token = issuer.issue(_account())
        clock.advance(899)
        assert issuer.verify(token).account_id == 7

    def test_expired_at_ttl_boundary(self, clock: FakeClock) -> None:
        issuer = TokenIssuer(SECRET, 900, clock=clock)
        token = issuer.issue(_account())
        clock.advance(900)
        with pytest.raises(TokenExpired):
            issuer.verify(token)

    def test_expired_long_after(self, clock: FakeClock) -> None:
        issuer = TokenIssuer(SECRET, 60, clock=clock)
        token = issuer.issue(_account())
        clock.advance(86400)
        with pytest.raises(TokenExpired):
            issuer.verify(token)

    def test_issue_is_pure(self, clock: FakeClock) -> None:
        """Same account, same clock -> same token."""
        issuer = TokenIssuer(SECRET, 900, clock=clock)
        assert issuer.issue(_account()) == issuer.issue(_account())

    def test_wrong_key_is_invalid_signature(self, clock: FakeClock) -> None:
        token = TokenIssuer("another-secret-key-0123456789abcdef", 900, clock=clock).issue(_account())
        with pytest.raises(InvalidSignature):
            TokenIssuer(SECRET, 900, clock=clock).verify(token)

    def test_wrong_issuer_rejected(self, clock: FakeClock) -> None:
        token = TokenIssuer(SECRET, 900, issuer="someone-else", clock=clock).issue(_account())
        with pytest.raises(InvalidSignature):
            TokenIssuer(SECRET, 900, clock=clock).verify(token)

    def test_tampered_token_rejected(self, clock: FakeClock) -> None:
        issuer = TokenIssuer(SECRET, 900, clock=clock)
        header, _payload, signature = issuer.issue(_account()).split(".")
        forged_payload = jwt.encode(
            {"user_id": 1, "email": "x@example.com", "role": "admin", "exp": 9999999999, "iss": "authcore"},
            "attacker-key",
            algorithm="HS256",
        ).split(".")[1]
        with pytest.raises(InvalidSignature):
            issuer.verify(f"{header}.{forged_payload}.{signature}")

    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c", "Bearer xyz"])
    def test_garbage_is_malformed(self, clock: FakeClock, garbage: str) -> None:
        with pytest.raises(MalformedToken):
            TokenIssuer(SECRET, 900, clock=clock).verify(garbage)

    def test_missing_claims_is_malformed(self, clock: FakeClock) -> None:
        token = jwt.encode({"sub": "7", "iss": "authcore", "exp": 9999999999}, SECRET, algorithm="HS256")
        with pytest.raises(MalformedToken):
            TokenIssuer(SECRET, 900, clock=clock).verify(token)


class TestPasswordHashing:
    def test_hash_then_verify(self) -> None:
        hashed = hash_password("Str0ng!Pass", rounds=4)
        assert hashed.startswith("$2")
        assert verify_password("Str0ng!Pass", hashed)
        assert not verify_password("wrong", hashed)

    def test_hash_is_salted(self) -> None:
        assert hash_password("same", rounds=4) != hash_password("same", rounds=4)

    def test_malformed_stored_hash_is_a_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestOpaqueTokens:
    def test_new_opaque_token_is_256_bits_hex(self) -> None:
        raw = new_opaque_token()
        assert re.fullmatch(r"[0-9a-f]{64}", raw)
        assert new_opaque_token() != raw

    def test_digest_is_deterministic_and_keyed(self) -> None:
        raw = "a" * 64
        assert digest_token(raw, SECRET) == digest_token(raw, SECRET)
        assert digest_token(raw, SECRET) != digest_token(raw, "other-secret")
        assert digest_token(raw, SECRET) != raw
