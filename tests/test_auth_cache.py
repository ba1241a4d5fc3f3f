"""
tests/test_auth_cache.py -- Best-effort auth cache (cache/store.py).

Coverage:
  - get/set/invalidate on the in-process backend, TTL expiry by clock
  - Stale "active" snapshot survives a store change until TTL or invalidate
  - Corrupt payloads and backend failures are misses, never exceptions
  - Redis backend uses SET ... EX ttl; unreachable Redis degrades to misses
  - SessionService.authenticate() answers the same with the cache broken
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from auth.errors import AuthenticationError
from auth.models import AuthSnapshot
from cache.store import AuthCache, MemoryCacheBackend, RedisCacheBackend, auth_key, build_auth_cache
from conftest import FakeClock, create_account, make_service


class TestMemoryCache:
    def test_miss_then_hit(self, cache: AuthCache) -> None:
        assert cache.get(1) is None
        cache.set(1, AuthSnapshot(active=True))
        assert cache.get(1) == AuthSnapshot(active=True)

    def test_invalidate_makes_next_get_a_miss(self, cache: AuthCache) -> None:
        cache.set(1, AuthSnapshot(active=True))
        cache.invalidate(1)
        assert cache.get(1) is None

    def test_invalidate_missing_key_is_noop(self, cache: AuthCache) -> None:
        cache.invalidate(404)
        assert cache.get(404) is None

    def test_entry_expires_after_ttl(self, cache: AuthCache, clock: FakeClock) -> None:
        cache.set(1, AuthSnapshot(active=True))
        clock.advance(599)
        assert cache.get(1) is not None
        clock.advance(1)
        assert cache.get(1) is None

    def test_explicit_ttl_overrides_default(self, cache: AuthCache, clock: FakeClock) -> None:
        cache.set(1, AuthSnapshot(active=False), ttl=10)
        clock.advance(10)
        assert cache.get(1) is None

    def test_non_positive_ttl_is_not_cached(self, cache: AuthCache) -> None:
        cache.set(1, AuthSnapshot(active=True), ttl=0)
        assert cache.get(1) is None

    def test_keys_are_per_account(self, cache: AuthCache) -> None:
        cache.set(1, AuthSnapshot(active=True))
        cache.set(2, AuthSnapshot(active=False))
        assert cache.get(1).active is True
        assert cache.get(2).active is False

    def test_purge_expired(self, clock: FakeClock) -> None:
        backend = MemoryCacheBackend(clock=clock)
        backend.set("a", "1", 10)
        backend.set("b", "1", 100)
        clock.advance(50)
        assert backend.purge_expired() == 1
        assert backend.get("b") == "1"


class TestCorruptionAndFailure:
    """Every failure mode is a miss."""

    @pytest.mark.parametrize("payload", ["not json", "[]", '{"other": 1}', '{"active": "yes"}', "null"])
    def test_corrupt_payload_is_a_miss_and_is_dropped(self, clock: FakeClock, payload: str) -> None:
        backend = MemoryCacheBackend(clock=clock)
        backend.set(auth_key(1), payload, 600)
        cache = AuthCache(backend)
        assert cache.get(1) is None
        assert backend.get(auth_key(1)) is None

    def test_backend_errors_are_swallowed(self, caplog) -> None:
        backend = MagicMock()
        backend.get.side_effect = RedisConnectionError("connection refused")
        backend.set.side_effect = RedisTimeoutError("timed out")
        backend.delete.side_effect = OSError("network down")
        cache = AuthCache(backend)

        with caplog.at_level(logging.WARNING, logger="authcore.cache"):
            assert cache.get(1) is None
            cache.set(1, AuthSnapshot(active=True))
            cache.invalidate(1)

        assert "GET failed" in caplog.text
        assert "SET failed" in caplog.text
        assert "DELETE failed" in caplog.text


class TestRedisBackend:
    def test_set_uses_server_side_expiry(self) -> None:
        client = MagicMock()
        cache = AuthCache(RedisCacheBackend("redis://unused", client=client), ttl=600)
        cache.set(5, AuthSnapshot(active=True))
        client.set.assert_called_once_with("auth:5", json.dumps({"active": True}), ex=600)

    def test_get_reads_json(self) -> None:
        client = MagicMock()
        client.get.return_value = '{"active": false}'
        cache = AuthCache(RedisCacheBackend("redis://unused", client=client))
        assert cache.get(5) == AuthSnapshot(active=False)
        client.get.assert_called_once_with("auth:5")

    def test_invalidate_deletes_key(self) -> None:
        client = MagicMock()
        AuthCache(RedisCacheBackend("redis://unused", client=client)).invalidate(5)
        client.delete.assert_called_once_with("auth:5")

    def test_unreachable_redis_degrades_to_miss(self) -> None:
        # Nothing listens on port 1; connect fails fast.
        cache = build_auth_cache("redis://127.0.0.1:1/0", 600, socket_timeout=0.2)
        assert isinstance(cache.backend, RedisCacheBackend)
        assert cache.get(1) is None
        cache.set(1, AuthSnapshot(active=True))
        cache.invalidate(1)
        cache.close()

    def test_no_url_selects_memory_backend(self) -> None:
        assert isinstance(build_auth_cache("", 600).backend, MemoryCacheBackend)


class TestAuthenticateThroughCache:
    """authenticate() gives identical answers with the cache healthy, empty, or broken."""

    def test_stale_active_snapshot_until_ttl(self, store, clock, cache) -> None:
        service = make_service(store, clock=clock, cache=cache)
        account = create_account(store, "stale@example.com")
        token = service.issuer.issue(account)
        assert service.authenticate(token).account_id == account.id  # populates cache

        # Deactivated behind the service's back: no invalidate().
        store.update_account(account.id, is_active=False)
        clock.advance(300)
        assert service.authenticate(service.issuer.issue(account)).account_id == account.id

        clock.advance(300)  # TTL reached
        with pytest.raises(AuthenticationError):
            service.authenticate(service.issuer.issue(account))

    def test_invalidate_ends_staleness_immediately(self, store, clock, cache) -> None:
        service = make_service(store, clock=clock, cache=cache)
        account = create_account(store, "stale@example.com")
        token = service.issuer.issue(account)
        service.authenticate(token)

        store.update_account(account.id, is_active=False)
        cache.invalidate(account.id)
        with pytest.raises(AuthenticationError):
            service.authenticate(token)

    @pytest.mark.parametrize("active", [True, False])
    def test_broken_cache_matches_store(self, store, clock, active) -> None:
        backend = MagicMock()
        backend.get.side_effect = RedisConnectionError("down")
        backend.set.side_effect = RedisConnectionError("down")
        service = make_service(store, clock=clock, cache=AuthCache(backend))
        account = create_account(store, "broken@example.com", active=active)
        token = service.issuer.issue(account)

        if active:
            assert service.authenticate(token).account_id == account.id
        else:
            with pytest.raises(AuthenticationError):
                service.authenticate(token)
