# core/retry.py
"""
Exponential-backoff retry for idempotent client calls.

The delay before retry k (0-indexed) is initial_delay * 2**k, capped at
max_backoff. Only errors accepted by the retry filter are retried; by default
that is anything classify() reports as transient.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.error_taxonomy import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, float, Exception], None]


@dataclass
class RetryConfig:
    """
    Configuration for retry behaviour.

    Attributes:
        max_retries: Retries after the first attempt (max_retries=3 means at most
                     4 attempts in total).
        initial_delay: Delay before the first retry (seconds).
        max_backoff: Maximum delay between retries (seconds).
        jitter: If True, sleep a uniform random time up to the exponential delay.
        max_total_timeout: Optional budget for all attempts (seconds). Once
                           spent, the last error is raised without further retries.
        retry_filter: Decides whether an exception is retryable.
                      Defaults to "classified as transient".
        on_retry: Called before each backoff sleep with the retry number
                  (1-indexed), the delay and the exception. Exceptions raised by
                  the hook are logged and ignored.
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_backoff: float = 60.0
    jitter: bool = False
    max_total_timeout: Optional[float] = None
    retry_filter: Optional[Callable[[Exception], bool]] = None
    on_retry: Optional[RetryHook] = None


def default_retry_filter(exc: Exception) -> bool:
    # Quota, rate-limit and fatal errors are never retried
    return classify(exc).is_transient


def backoff_delay(config: RetryConfig, attempt: int) -> float:
    """Delay before retry number `attempt` (0-indexed)."""
    delay = min(config.max_backoff, config.initial_delay * (2 ** attempt))
    if config.jitter:
        return random.uniform(0, delay)
    return delay


def notify_retry(config: RetryConfig, attempt: int, delay: float, exc: Exception) -> None:
    if config.on_retry is None:
        return
    try:
        config.on_retry(attempt, delay, exc)
    except Exception:
        logger.debug("on_retry hook failed", exc_info=True)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    config: Optional[RetryConfig] = None,
    request_id: Optional[str] = None,
) -> T:
    """
    Await `func()` with retries. When giving up, the error of the final
    attempt is raised.

    Only use this on idempotent calls. Streams retry their opening request
    themselves and never replay chunks already delivered.
    """
    config = config or RetryConfig()
    is_retryable = config.retry_filter or default_retry_filter
    started = time.monotonic()
    attempt = 0

    while True:
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            exc = e

        elapsed = time.monotonic() - started
        retryable = is_retryable(exc)
        out_of_budget = config.max_total_timeout is not None and elapsed >= config.max_total_timeout

        if not retryable or attempt >= config.max_retries or out_of_budget:
            logger.warning("Giving up after failure", extra={
                "event": "retry_failed",
                "attempts": attempt + 1,
                "retryable": retryable,
                "out_of_budget": out_of_budget,
                "error_type": type(exc).__name__,
                "error_message": str(exc),
                "request_id": request_id,
            })
            raise exc

        delay = backoff_delay(config, attempt)
        if config.max_total_timeout is not None:
            delay = max(0.0, min(delay, config.max_total_timeout - elapsed))

        notify_retry(config, attempt + 1, delay, exc)
        logger.warning("Retrying after failure", extra={
            "event": "retry_attempt",
            "attempt": attempt + 1,
            "delay": round(delay, 3),
            "error_type": type(exc).__name__,
            "request_id": request_id,
        })
        await asyncio.sleep(delay)
        attempt += 1
