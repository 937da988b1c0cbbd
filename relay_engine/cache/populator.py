"""
Relay Engine — Deduping Populator
──────────────────────────────────
Read-through helpers on top of TieredCache.

get_or_set_deduped() collapses concurrent misses for the same
region:key into one loader call. The shared future is registered
before anything is awaited, so two callers arriving in the same loop
iteration can never both start the loader.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from relay_engine.cache.regions import resolve_region
from relay_engine.cache.tiered_cache import MISSING, RegionLike, TieredCache
from relay_engine.errors import UnknownRegionError

log = logging.getLogger("relay.cache")

Loader = Callable[[], Awaitable[Any]]


def _request_key(region: RegionLike, key: str) -> str:
    try:
        name = resolve_region(region).value
    except ValueError:
        raise UnknownRegionError(region) from None
    return f"{name}:{key}"


class DedupingPopulator:

    def __init__(self, cache: TieredCache):
        self.cache = cache
        self._pending: Dict[str, asyncio.Future] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def get_or_set(self, region: RegionLike, key: str, loader: Loader,
                         ttl: Optional[float] = None) -> Any:
        _request_key(region, key)
        value = self.cache.get(region, key, MISSING)
        if value is not MISSING:
            return value
        try:
            value = await loader()
        except Exception as e:
            log.error(f"Loader failed for {key}: {e}")
            raise
        self.cache.set(region, key, value, ttl)
        return value

    async def get_or_set_deduped(self, region: RegionLike, key: str, loader: Loader,
                                 ttl: Optional[float] = None) -> Any:
        request_key = _request_key(region, key)
        value = self.cache.get(region, key, MISSING)
        if value is not MISSING:
            return value

        pending = self._pending.get(request_key)
        if pending is None:
            pending = asyncio.ensure_future(self._populate(request_key, region, key, loader, ttl))
            self._pending[request_key] = pending
        else:
            log.debug(f"Joining in-flight request {request_key}")

        # One waiter being cancelled must not cancel the shared load.
        return await asyncio.shield(pending)

    async def _populate(self, request_key: str, region: RegionLike, key: str,
                        loader: Loader, ttl: Optional[float]) -> Any:
        try:
            value = await loader()
            self.cache.set(region, key, value, ttl)
            return value
        except Exception as e:
            log.error(f"Loader failed for {request_key}: {e}")
            raise
        finally:
            self._pending.pop(request_key, None)
