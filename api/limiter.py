"""
api/limiter.py -- Fixed-window rate limiter for the credential endpoints.

The counter store is the `limits` library's MemoryStorage (the same backend
slowapi uses), which increments under a lock, so concurrent requests from one
client never lose an update. Client identity comes from slowapi's
get_remote_address.

Known limitation: counters live in this process only. Behind a load balancer
each instance enforces its own window; switch the storage to
limits.storage.RedisStorage to share them.

One RateLimiter is created in the lifespan and stored on app.state, so every
gated route shares one counter store. A per-module instance would give each
module its own isolated counters.
"""

from __future__ import annotations

import logging
import math
import time

from fastapi import Request
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import FixedWindowRateLimiter
from slowapi.util import get_remote_address

from auth.errors import RateLimitedError

logger = logging.getLogger("authcore.api.limiter")


class RateLimiter:
    """gate(key) -> True (allow) / False (deny) under a fixed-window limit.

    limit_string uses the limits notation, e.g. "10/minute", "100/15 minutes".
    """

    def __init__(self, limit_string: str, *, namespace: str = "auth") -> None:
        self.limit = parse(limit_string)
        self.namespace = namespace
        self._storage = MemoryStorage()
        self._strategy = FixedWindowRateLimiter(self._storage)

    def gate(self, client_key: str) -> bool:
        """Count one request for client_key; False once the window is full."""
        allowed = self._strategy.hit(self.limit, self.namespace, client_key)
        if not allowed:
            logger.warning("Rate limit %s exceeded for %s", self.limit, client_key)
        return allowed

    def retry_after(self, client_key: str) -> int:
        """Whole seconds until the client's current window resets (at least 1)."""
        stats = self._strategy.get_window_stats(self.limit, self.namespace, client_key)
        return max(1, math.ceil(stats.reset_time - time.time()))

    def reset(self, client_key: str) -> None:
        self._strategy.clear(self.limit, self.namespace, client_key)

    def close(self) -> None:
        self._storage.reset()


def rate_limit(request: Request) -> None:
    """FastAPI dependency gating a route on the shared limiter.

    Use as:
        @router.post("/login", dependencies=[Depends(rate_limit)])
    """
    limiter: RateLimiter = request.app.state.rate_limiter
    client_key = get_remote_address(request)
    if not limiter.gate(client_key):
        raise RateLimitedError(retry_after=limiter.retry_after(client_key))
