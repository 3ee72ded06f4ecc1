"""Exponential backoff: the delay formula shared by the queue and the trigger
consumer, and a decorator for short in-process retries of external calls."""
from __future__ import annotations

import functools
import random
import time
from typing import Any, Callable, Tuple, Type

from matchflow.log import get_logger

log = get_logger(__name__)


def backoff_delay(
    attempts: int,
    *,
    base_delay: float,
    max_delay: float,
    backoff_factor: float = 2.0,
) -> float:
    """Seconds to wait after ``attempts`` failures: base * factor**attempts, capped."""
    if attempts < 0:
        raise ValueError("attempts must be >= 0")
    return min(base_delay * (backoff_factor ** attempts), max_delay)


def retry(
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
    retryable: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """Call the wrapped function up to ``max_attempts`` times.

    Only ``retryable`` exceptions trigger another attempt; the last one is
    re-raised unchanged so callers can map it to their own error types.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 1
            while True:
                try:
                    return fn(*args, **kwargs)
                except retryable as exc:
                    if attempt >= max_attempts:
                        log.warning("%s gave up after %d attempt(s): %s", fn.__qualname__, attempt, exc)
                        raise
                    delay = backoff_delay(attempt - 1, base_delay=base_delay, max_delay=max_delay)
                    if jitter:
                        delay = random.uniform(delay / 2, delay)
                    log.warning("%s attempt %d/%d failed (%s), retrying in %.1fs",
                                fn.__qualname__, attempt, max_attempts, exc, delay)
                    time.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
