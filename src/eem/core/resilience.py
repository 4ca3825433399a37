"""Retry with exponential backoff and a hard timeout around collaborator calls."""

from __future__ import annotations

import concurrent.futures
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from eem.core.errors import RetryExhaustedError, TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TRANSIENT: tuple[type[BaseException], ...] = (
    TransientError,
    TimeoutError,
    concurrent.futures.TimeoutError,
    ConnectionError,
)

# Shared pool used only to enforce per-call timeouts. A call that times out
# keeps running in its worker until it completes or fails on its own.
_timeout_pool = concurrent.futures.ThreadPoolExecutor(
    max_workers=16, thread_name_prefix="eem-call"
)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff and a per-attempt timeout.

    Args:
        name: Policy name used in log messages.
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single backoff delay.
        timeout: Hard timeout per attempt in seconds (None disables it).
        retry_on: Exception types treated as transient.
    """

    name: str
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    timeout: float | None = 30.0
    retry_on: tuple[type[BaseException], ...] = field(default=DEFAULT_TRANSIENT)

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return delay + random.uniform(0, self.base_delay / 4)

    def is_transient(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)


STORAGE_POLICY = RetryPolicy("storage", max_attempts=5, base_delay=1.0, max_delay=10.0, timeout=30.0)
INDEX_POLICY = RetryPolicy("index", max_attempts=3, base_delay=1.0, max_delay=8.0, timeout=20.0)
AI_POLICY = RetryPolicy("ai", max_attempts=4, base_delay=2.0, max_delay=16.0, timeout=60.0)


def _run_with_timeout(fn: Callable[[], T], timeout: float | None) -> T:
    if timeout is None:
        return fn()
    future = _timeout_pool.submit(fn)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        raise TimeoutError(f"call timed out after {timeout}s") from exc


def call_with_policy(
    policy: RetryPolicy,
    fn: Callable[..., T],
    *args,
    operation: str = "call",
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> T:
    """Invoke ``fn(*args, **kwargs)`` under ``policy``.

    Transient errors are retried with backoff; anything else propagates
    immediately. When every attempt fails, RetryExhaustedError is raised
    chained to the last error.
    """
    attempt = 0
    while True:
        try:
            return _run_with_timeout(lambda: fn(*args, **kwargs), policy.timeout)
        except Exception as exc:
            if not policy.is_transient(exc):
                raise
            attempt += 1
            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(operation, policy.max_attempts, exc) from exc
            delay = policy.backoff(attempt - 1)
            logger.warning(
                "[%s] transient error in %s (attempt %d/%d), retrying in %.1fs: %s",
                policy.name, operation, attempt, policy.max_attempts, delay, exc,
            )
            sleep(delay)
