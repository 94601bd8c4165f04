"""Bounded retry with exponential backoff for vendor calls."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

from errors import RetryExhausted

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_JITTER = 0.5  # seconds


def backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    jitter: Optional[float] = None,
) -> float:
    """Delay before retry number *attempt* (1-based), jitter included."""
    if jitter is None:
        jitter = random.random() * MAX_JITTER
    return initial_delay * (backoff_factor ** (attempt - 1)) + jitter


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    on_retry: Optional[Callable[[int, BaseException], Any]] = None,
    label: str = "Operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    jitter: Optional[Callable[[], float]] = None,
    retry_if: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """Await ``fn()`` until it succeeds or *max_retries* retries are spent.

    Every failure is retried the same way unless *retry_if* says otherwise;
    an error it rejects is re-raised untouched. Errors that must stop the
    caller outright (missing config, bad input) belong before this call.
    """
    if max_retries < 0:
        raise ValueError("max_retries must be non-negative")

    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if retry_if is not None and not retry_if(exc):
                log.info("%s: non-retryable error: %s", label, exc)
                raise
            attempt += 1
            if attempt > max_retries:
                log.error("%s: giving up after %d retries: %s", label, max_retries, exc)
                raise RetryExhausted(
                    f"{label} failed after {max_retries} retries. Last error: {exc}",
                    attempts=attempt,
                    last_error=exc,
                ) from exc
            if on_retry is not None:
                on_retry(attempt, exc)
            delay = backoff_delay(
                attempt,
                initial_delay,
                backoff_factor,
                jitter() if jitter is not None else None,
            )
            log.warning(
                "%s: attempt %d/%d failed (%s). Retrying in %.2fs…",
                label, attempt, max_retries + 1, str(exc)[:120], delay,
            )
            await sleep(delay)
