# client/rate_limiter.py
"""
Client-side sliding-window limiter.

Callers over the limit are not rejected; they wait in FIFO order until a slot
frees up, either because an earlier request called `release()` or because its
timestamp slid out of the window.

    limiter = ClientRateLimiter(max_requests=10, window_seconds=60)
    await limiter.acquire()
    try:
        ...
    finally:
        limiter.release()
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

from core import metrics

logger = logging.getLogger(__name__)


class ClientRateLimiter:
    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._waiters: Deque[asyncio.Future] = deque()
        self._timer: Optional[asyncio.TimerHandle] = None

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait until a request slot is available and take it."""
        now = self._clock()
        self._prune(now)
        if not self._waiters and len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        metrics.record_rate_limit_rejection("client")
        logger.info("Client rate limit reached, request queued", extra={
            "queued": len(self._waiters),
            "max_requests": self.max_requests,
        })
        self._schedule_drain()

        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # Slot was granted as we were cancelled: give it back
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
            raise

    def release(self) -> None:
        """Free the oldest slot and wake the next queued caller, if any."""
        if self._timestamps:
            self._timestamps.popleft()
        self._drain()

    def _drain(self) -> None:
        now = self._clock()
        self._prune(now)
        while self._waiters and len(self._timestamps) < self.max_requests:
            waiter = self._waiters.popleft()
            if waiter.done():
                continue
            self._timestamps.append(now)
            waiter.set_result(None)
        self._schedule_drain()

    def _schedule_drain(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self._waiters or not self._timestamps:
            return
        delay = max(0.0, self._timestamps[0] + self.window_seconds - self._clock())
        self._timer = asyncio.get_running_loop().call_later(delay, self._drain)

    def stats(self) -> Dict[str, int]:
        self._prune(self._clock())
        return {
            "current": len(self._timestamps),
            "max": self.max_requests,
            "queued": sum(1 for w in self._waiters if not w.done()),
        }

    def reset(self) -> None:
        """Forget all recorded requests; queued callers are admitted up to the limit."""
        self._timestamps.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._waiters:
            self._drain()
