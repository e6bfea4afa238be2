# src/pipeline/retry.py — v1
"""Retry of transient stage faults with exponential backoff.

Only ExecutionError (timeout, spawn failure) marked retryable is retried.
Policy outcomes such as a failing verdict, a rejection or an apply failure
are results, not exceptions, and never pass through here.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

from deploygate.config.pipeline_config import RetryPolicy
from deploygate.core.errors import ExecutionError

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """All attempts of a stage failed with transient errors."""

    def __init__(self, label: str, attempts: int, last_error: ExecutionError):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"'{label}' failed after {attempts} attempts: {last_error}")


def _compute_delay(policy: RetryPolicy, attempt: int) -> float:
    """Compute delay for a given attempt (0-based)."""
    delay = policy.delay_for(attempt)
    if policy.jitter:
        delay *= 0.5 + random.random()  # noqa: S311
    return delay


async def with_retry(
    fn: Callable[..., Awaitable[Any]],
    *args: Any,
    policy: RetryPolicy,
    label: str = "stage",
    **kwargs: Any,
) -> tuple[Any, int]:
    """Execute an async function, retrying ExecutionError.

    Returns:
        (result, attempts) where attempts counts the successful call.

    Raises:
        RetryExhausted: If every attempt raised ExecutionError, or the first
            one was not retryable.
    """
    attempts = 0

    while True:
        attempts += 1
        try:
            return await fn(*args, **kwargs), attempts
        except ExecutionError as e:
            if not e.retryable:
                logger.error("%s: %s is not retryable", label, e.reason or "ExecutionError")
                raise RetryExhausted(label, attempts, e) from e
            if attempts > policy.max_retries:
                raise RetryExhausted(label, attempts, e) from e

            delay = _compute_delay(policy, attempts - 1)
            logger.warning(
                "%s: %s (attempt %d/%d), retrying in %.1fs",
                label, e.reason or "ExecutionError", attempts, policy.max_retries + 1, delay,
            )
            await asyncio.sleep(delay)
