"""
Relay Engine — Retry with Backoff
──────────────────────────────────
Provider-agnostic resilience for one outbound call:

  with_timeout()        bound a single attempt
  retry_with_backoff()  bounded retries, exponential delay + jitter
  resilient_fetch()     retry_with_backoff(with_timeout(fn()))

The error that finally escapes is always the original one, unwrapped,
so callers can still branch on status codes.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from relay_engine.errors import (
    RETRY_STATUSES, RequestTimeoutError, is_connection_error, is_timeout, status_of,
)

log = logging.getLogger("relay.retry")

T = TypeVar("T")

# ── Per-provider attempt budgets (seconds) ────────────────────
TIMEOUTS = {
    "steam_api":    15,   # can be slow
    "opendota":     20,   # free tier is very slow
    "steam_market": 20,   # slow with filters
    "store":        5,
    "default":      15,
}


def should_retry(err: BaseException) -> bool:
    """Default classifier: network/timeout, 429/502/503/504 and other 5xx."""
    if is_timeout(err) or is_connection_error(err):
        return True

    status = status_of(err)
    if status is None:
        return False
    if status in RETRY_STATUSES:
        return True
    if 400 <= status < 500:
        return False
    return status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    max_retries:   int = 2
    initial_delay: float = 0.5
    max_delay:     float = 5.0
    jitter:        float = 1.0
    should_retry:  Callable[[BaseException], bool] = should_retry

    def delay_for(self, attempt: int) -> float:
        """Sleep before retry number attempt+1 (attempt counts from 0)."""
        return min(
            self.initial_delay * (2 ** attempt) + random.uniform(0, self.jitter),
            self.max_delay,
        )


DEFAULT_POLICY = RetryPolicy()


def _discard_result(task: asyncio.Future):
    if not task.cancelled():
        task.exception()


async def with_timeout(operation: Awaitable[T], timeout: float, context: str = "Request") -> T:
    """
    Race operation against a timer. On expiry raise RequestTimeoutError and
    abandon the operation: it keeps running and whatever it produces is dropped.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError:
        task.add_done_callback(_discard_result)
        raise RequestTimeoutError(f"{context} timeout after {timeout}s") from None


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    *,
    context: str = "External API",
    **overrides: Any,
) -> T:
    """
    Call fn() up to policy.max_retries + 1 times.
    overrides replace individual RetryPolicy fields for this call.
    """
    policy = replace(policy or DEFAULT_POLICY, **overrides)
    attempts = policy.max_retries + 1

    for attempt in range(attempts):
        try:
            log.debug(f"[{context}] attempt {attempt + 1}/{attempts}")
            return await fn()
        except Exception as e:
            if attempt == policy.max_retries or not policy.should_retry(e):
                log.error(f"[{context}] failed after {attempt + 1} attempts: {e}")
                raise

            delay = policy.delay_for(attempt)
            log.warning(
                f"[{context}] attempt {attempt + 1} failed "
                f"(status={status_of(e)}): {e} — retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")


async def resilient_fetch(
    fn: Callable[[], Awaitable[T]],
    *,
    timeout: float = TIMEOUTS["default"],
    max_retries: int = 3,
    context: str = "External API",
    **overrides: Any,
) -> T:
    return await retry_with_backoff(
        lambda: with_timeout(fn(), timeout, context),
        context=context,
        max_retries=max_retries,
        **overrides,
    )


def resilient(timeout: float = TIMEOUTS["default"], max_retries: int = 3,
              context: Optional[str] = None, **overrides: Any):
    """
    Decorator form of resilient_fetch for async functions.

    Usage:
        @resilient(timeout=TIMEOUTS["opendota"], context="OpenDota")
        async def fetch_player(client, account_id): ...
    """
    def decorator(func):
        label = context or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await resilient_fetch(
                lambda: func(*args, **kwargs),
                timeout=timeout, max_retries=max_retries, context=label, **overrides,
            )
        return wrapper
    return decorator
