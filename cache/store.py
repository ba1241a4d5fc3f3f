"""
cache/store.py -- Best-effort read-through cache of per-account auth state.

The request path asks this cache whether an account is still active before
falling back to the account store. Every failure mode -- backend down,
timeout, corrupt payload -- is logged and reported as a miss, so the system
answers identically (modulo latency) with the cache healthy, empty, or gone.

Staleness contract: an entry lives for its TTL (default 600s). A deactivation
that goes through SessionService calls invalidate(); a change made behind its
back leaves the old "active" snapshot readable until the TTL runs out.

Backends:
  RedisCacheBackend  -- REDIS_URL set; shared by every process on the host.
  MemoryCacheBackend -- default; per-process dict with lazy TTL expiry.

Usage:
    cache = AuthCache(MemoryCacheBackend(), ttl=600)
    cache.set(42, AuthSnapshot(active=True))
    cache.get(42)          # AuthSnapshot(active=True) or None
    cache.invalidate(42)
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Optional, Protocol

import redis
from redis.backoff import NoBackoff
from redis.exceptions import RedisError
from redis.retry import Retry

from auth.models import AuthSnapshot
from core.clock import Clock, to_epoch, utc_now

logger = logging.getLogger("authcore.cache")

_DEFAULT_TTL = 600  # 10 minutes in seconds


def auth_key(account_id: int) -> str:
    return f"auth:{account_id}"


class CacheBackend(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: int) -> None: ...

    def delete(self, key: str) -> None: ...

    def close(self) -> None: ...


class MemoryCacheBackend:
    """In-process TTL map. Entries are dropped lazily on read or purge."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        now = to_epoch(self._clock())
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl: int) -> None:
        expires_at = to_epoch(self._clock()) + ttl
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of entries removed."""
        now = to_epoch(self._clock())
        with self._lock:
            expired = [k for k, (_, exp) in self._data.items() if exp <= now]
            for k in expired:
                del self._data[k]
        return len(expired)

    def close(self) -> None:
        with self._lock:
            self._data.clear()


class RedisCacheBackend:
    """Redis-backed entries with server-side expiry (SET ... EX ttl).

    Short socket timeouts keep a hung Redis from stalling the request path;
    AuthCache converts the resulting errors into misses.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 0.5, client: redis.Redis | None = None) -> None:
        self.client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            # No retries: a failed call is a cache miss, not something to wait on.
            retry=Retry(NoBackoff(), 0),
        )

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl: int) -> None:
        self.client.set(key, value, ex=ttl)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def close(self) -> None:
        self.client.close()


class AuthCache:
    """Swallows backend failures; every problem is a miss."""

    def __init__(self, backend: CacheBackend, ttl: int = _DEFAULT_TTL) -> None:
        self.backend = backend
        self.ttl = ttl

    def get(self, account_id: int) -> Optional[AuthSnapshot]:
        """Return the cached snapshot, or None on miss, corruption, or failure."""
        key = auth_key(account_id)
        try:
            raw = self.backend.get(key)
        except (RedisError, OSError) as e:
            logger.warning("Auth cache GET failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return AuthSnapshot(active=_strict_bool(data["active"]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding corrupt auth cache entry %s: %s", key, e)
            self.invalidate(account_id)
            return None

    def set(self, account_id: int, snapshot: AuthSnapshot, ttl: int | None = None) -> None:
        """Store a snapshot. Non-positive TTL means "do not cache"."""
        effective_ttl = self.ttl if ttl is None else ttl
        if effective_ttl <= 0:
            return
        key = auth_key(account_id)
        try:
            self.backend.set(key, json.dumps({"active": snapshot.active}), effective_ttl)
        except (RedisError, OSError) as e:
            logger.warning("Auth cache SET failed for %s: %s", key, e)

    def invalidate(self, account_id: int) -> None:
        key = auth_key(account_id)
        try:
            self.backend.delete(key)
        except (RedisError, OSError) as e:
            logger.warning("Auth cache DELETE failed for %s: %s", key, e)

    def close(self) -> None:
        try:
            self.backend.close()
        except (RedisError, OSError) as e:
            logger.warning("Auth cache close failed: %s", e)


def _strict_bool(value) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"expected bool, got {type(value).__name__}")
    return value


def build_auth_cache(redis_url: str, ttl: int, *, socket_timeout: float = 0.5) -> AuthCache:
    """Pick the backend from configuration. Redis is never pinged here --
    an unreachable server just produces misses."""
    if redis_url:
        logger.info("Auth cache backend: redis")
        return AuthCache(RedisCacheBackend(redis_url, socket_timeout=socket_timeout), ttl=ttl)
    logger.info("Auth cache backend: in-process memory")
    return AuthCache(MemoryCacheBackend(), ttl=ttl)
