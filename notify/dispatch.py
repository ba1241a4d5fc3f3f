"""
notify/dispatch.py -- Detached, observable notification sends.

NotificationDispatcher.submit() schedules a send on a small thread pool and
returns the Future immediately; the request that triggered it never waits.
Two things watch each send:

  - A deadline timer armed at submit(). If the send is still pending when it
    fires, the timeout is logged right away, even if the send never returns:

        ERROR authcore.notify Notification 'verification' timed out after 8.0s

  - A done callback that logs the outcome once the send finishes (failure,
    late completion, or success) and disarms the timer.

Python threads cannot be killed, so a stalled send keeps its worker until the
notifier's own socket timeout gives up. The deadline bounds when the failure
becomes visible, not when the thread is freed.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger("authcore.notify")


class NotificationDispatcher:
    def __init__(self, *, timeout: float = 8.0, max_workers: int = 4) -> None:
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="notify")

    def submit(self, kind: str, fn: Callable[..., object], *args) -> Future:
        """Run fn(*args) in the background. Never raises for a failing send."""
        started = time.monotonic()
        future = self._executor.submit(fn, *args)
        deadline = threading.Timer(self.timeout, self._expire, args=(kind, future))
        deadline.daemon = True
        deadline.start()
        future.add_done_callback(lambda f: self._report(kind, f, started, deadline))
        return future

    def _expire(self, kind: str, future: Future) -> None:
        if future.done():
            return
        # A send still queued behind stalled workers is dropped; a running one cannot be.
        if future.cancel():
            logger.error("Notification %r timed out after %.1fs before it started", kind, self.timeout)
        else:
            logger.error("Notification %r timed out after %.1fs", kind, self.timeout)

    def _report(self, kind: str, future: Future, started: float, deadline: threading.Timer) -> None:
        deadline.cancel()
        elapsed = time.monotonic() - started
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Notification %r failed after %.2fs: %s: %s",
                kind,
                elapsed,
                type(exc).__name__,
                exc,
            )
            return
        if elapsed > self.timeout:
            logger.warning("Notification %r finished after its deadline, in %.2fs", kind, elapsed)
        else:
            logger.debug("Notification %r sent in %.2fs", kind, elapsed)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
