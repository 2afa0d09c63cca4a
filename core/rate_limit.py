# core/rate_limit.py
"""
Server-side sliding-window admission control.

The per-client windows live in a RateLimitStore that is passed into the
limiter, so the app can share one store for the process lifetime while tests
build isolated instances.

admit() never awaits: pruning and recording happen synchronously, so one
request can never hold a window while another request on the same event
loop waits for it.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterator, Optional

from core import metrics

logger = logging.getLogger(__name__)

ANONYMOUS_CLIENT_ID = "anonymous"


class RateLimitStore:
    """Mapping of client id -> timestamps admitted inside the current window."""

    def __init__(self):
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, client_id: str) -> bool:
        return client_id in self._windows

    def keys(self) -> Iterator[str]:
        return iter(list(self._windows))

    def window(self, client_id: str) -> Deque[float]:
        window = self._windows.get(client_id)
        if window is None:
            window = self._windows[client_id] = deque()
        return window

    def discard(self, client_id: str) -> None:
        self._windows.pop(client_id, None)

    def clear(self) -> None:
        self._windows.clear()

    @property
    def lock(self) -> threading.Lock:
        return self._lock


class SlidingWindowRateLimiter:
    """
    Admit at most `max_requests` per `window_seconds` for each client id.

    :param store: window storage; a fresh one is created when omitted.
    :param compaction_threshold: once more keys than this are tracked, every
                                 admission sweeps out keys whose window is empty.
    :param clock: monotonic time source in seconds (injectable for tests).
    """

    def __init__(
        self,
        store: Optional[RateLimitStore] = None,
        *,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        compaction_threshold: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.store = store if store is not None else RateLimitStore()
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.compaction_threshold = compaction_threshold
        self._clock = clock

    def _prune(self, window: Deque[float], now: float) -> None:
        while window and now - window[0] >= self.window_seconds:
            window.popleft()

    def admit(self, client_id: Optional[str] = None) -> bool:
        client_id = client_id or ANONYMOUS_CLIENT_ID
        now = self._clock()

        with self.store.lock:
            window = self.store.window(client_id)
            self._prune(window, now)
            allowed = len(window) < self.max_requests
            if allowed:
                window.append(now)
            if len(self.store) > self.compaction_threshold:
                self._compact(now)

        if not allowed:
            metrics.record_rate_limit_rejection("server")
            logger.warning("Rate limit exceeded", extra={
                "client_id": client_id,
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
            })
        return allowed

    def remaining(self, client_id: Optional[str] = None) -> int:
        client_id = client_id or ANONYMOUS_CLIENT_ID
        with self.store.lock:
            if client_id not in self.store:
                return self.max_requests
            window = self.store.window(client_id)
            self._prune(window, self._clock())
            return self.max_requests - len(window)

    def _compact(self, now: float) -> None:
        # Caller holds the store lock
        dropped = 0
        for key in self.store.keys():
            window = self.store.window(key)
            self._prune(window, now)
            if not window:
                self.store.discard(key)
                dropped += 1
        if dropped:
            logger.info("Compacted rate limit store", extra={
                "dropped_keys": dropped,
                "tracked_keys": len(self.store),
            })
