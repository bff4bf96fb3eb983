"""Exponential backoff for idempotent Daraja calls (token fetch, status query).

STK push itself is not retried here: a retried push can prompt the
customer's phone twice.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

# Daraja answers 429 under load and 5xx during maintenance windows
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def retry_transient(
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.25,
) -> Callable:
    """Decorator: retry on transport errors and retryable HTTP statuses.

    Args:
        attempts: Total tries, including the first.
        base_delay: Delay before the first retry, doubled each time.
        max_delay: Cap on any single delay.
        jitter: Fraction of the delay randomized either way.
    """

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt == attempts:
                        raise
                    reason = f"HTTP {status}"
                    delay = backoff_delay(attempt, base_delay, max_delay, jitter, e.response)
                except httpx.TransportError as e:
                    if attempt == attempts:
                        raise
                    reason = type(e).__name__
                    delay = backoff_delay(attempt, base_delay, max_delay, jitter)
                logger.warning(
                    "%s failed (%s), attempt %d/%d, retrying in %.2fs",
                    fn.__name__, reason, attempt, attempts, delay,
                )
                time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based), honoring Retry-After."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    spread = delay * jitter
    return max(0.05, delay + random.uniform(-spread, spread))
