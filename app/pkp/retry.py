"""Bounded retry with exponential backoff and per-call deadlines.

Every upstream call in the pipeline goes through call_with_retry so that
a stuck dependency costs at most ``attempts * timeout`` plus backoff, and
the caller always sees a typed error rather than a raw httpx/asyncio one.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from app.core.config import (
    REGISTRY_MAX_ATTEMPTS,
    RETRY_BACKOFF_SECONDS,
    UPSTREAM_TIMEOUT_SECONDS,
)
from app.pkp.exceptions import UpstreamTimeoutError, UpstreamUnavailableError

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for one class of upstream call.

    Attributes:
        attempts: Total attempts including the first (>= 1).
        backoff_seconds: Base delay; attempt n waits base * 2 ** (n - 1).
        timeout_seconds: Deadline for each individual attempt.
    """
    attempts: int = REGISTRY_MAX_ATTEMPTS
    backoff_seconds: float = RETRY_BACKOFF_SECONDS
    timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


async def with_deadline(coro: Awaitable[T], timeout: float, op: str) -> T:
    """Await coro under a deadline, mapping expiry to UpstreamTimeoutError."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        raise UpstreamTimeoutError(f"{op} exceeded {timeout}s deadline")


async def call_with_retry(
    op: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
) -> T:
    """Run fn with per-attempt deadline, retrying transient failures.

    Only UpstreamUnavailableError (and subclasses: registry unavailable,
    timeout, authorization unavailable) is retried. Anything else
    propagates immediately. fn is re-invoked from scratch on every
    attempt, so it can re-read state before repeating a write.

    Args:
        op: Operation name for logs and error messages.
        fn: Zero-argument coroutine factory; called once per attempt.
        policy: Retry budget.

    Raises:
        The last transient error once attempts are exhausted.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await with_deadline(fn(), policy.timeout_seconds, op)
        except UpstreamUnavailableError as e:
            if attempt >= policy.attempts:
                log.warning(f"{op}: giving up after {attempt} attempt(s): {e.code} {e.message}")
                raise
            delay = policy.delay(attempt)
            log.info(f"{op}: attempt {attempt} failed ({e.code}), retrying in {delay:.2f}s")
            if delay > 0:
                await asyncio.sleep(delay)
