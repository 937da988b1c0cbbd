"""
Relay Engine — Errors & Failure Classification
────────────────────────────────────────────────
Taxonomy used across the retrier and the request queue:

  Transient-Network   connection reset / unreachable / timeout → retried
  RateLimited         HTTP 429 → long cooldown, capped retries
  Client-Rejected     other 4xx → never retried, propagated unchanged
  Server-Side         5xx → retried like transient errors

Provider errors (httpx.HTTPStatusError etc.) are never wrapped; the
helpers below only inspect them.
"""

import asyncio
import re
from typing import Optional

import httpx

_TIMEOUT_RE    = re.compile(r"timeout|timed out", re.IGNORECASE)
_HANG_UP_RE    = re.compile(r"socket hang up|connection reset", re.IGNORECASE)
RETRY_STATUSES = {429, 502, 503, 504}


class RelayError(Exception):
    """Base class for errors raised by the relay engine itself."""


class UnknownRegionError(RelayError, KeyError):
    """A cache region outside the closed CacheRegion set was requested."""

    def __init__(self, region):
        self.region = region
        super().__init__(f"Cache region {region!r} not found")

    def __str__(self) -> str:
        return self.args[0]


class RequestTimeoutError(RelayError, TimeoutError):
    """An attempt exceeded its time budget in with_timeout()."""


class QueueClosedError(RelayError):
    """The request queue was closed while the task was still waiting."""


def status_of(err: BaseException) -> Optional[int]:
    """HTTP status carried by an error, if any."""
    response = getattr(err, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(err, "status_code", None)
    return status if isinstance(status, int) else None


def is_timeout(err: BaseException) -> bool:
    if isinstance(err, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return True
    return bool(_TIMEOUT_RE.search(str(err) or ""))


def is_connection_error(err: BaseException) -> bool:
    if isinstance(err, (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)):
        return True
    return bool(_HANG_UP_RE.search(str(err) or ""))


def is_rate_limited(err: BaseException) -> bool:
    return status_of(err) == 429
