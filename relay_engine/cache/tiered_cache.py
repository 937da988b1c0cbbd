"""
Relay Engine — Tiered Cache
────────────────────────────
In-memory key → value store partitioned into the closed set of
CacheRegion members. Each region has its own default TTL and its own
expiry-sweep period; hit/miss counters are kept per region and globally.

Reads never return an expired entry: expiry is checked lazily on every
read and, once start() has been called, a background task purges expired
entries on each region's check period.
"""

import asyncio
import copy
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from relay_engine.cache.regions import REGIONS, CacheRegion, RegionConfig, resolve_region
from relay_engine.errors import UnknownRegionError

log = logging.getLogger("relay.cache")

RegionLike = Union[CacheRegion, str]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


# Absent marker; a cached None is still a hit.
MISSING: Any = _Missing()


@dataclass
class CacheEntry:
    key:        str
    value:      Any
    expires_at: Optional[float]   # monotonic seconds; None = never

    def expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class _Region:
    """Storage and counters for one region."""

    def __init__(self, config: RegionConfig):
        self.config     = config
        self.entries:   Dict[str, CacheEntry] = {}
        self.hits       = 0
        self.misses     = 0
        self.next_sweep = 0.0

    def reset(self):
        self.entries.clear()
        self.hits   = 0
        self.misses = 0


class TieredCache:

    def __init__(
        self,
        regions: Optional[Mapping[CacheRegion, RegionConfig]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        table = dict(REGIONS)
        if regions:
            for region, config in regions.items():
                table[resolve_region(region)] = config
        self._clock   = clock
        self._regions: Dict[CacheRegion, _Region] = {r: _Region(c) for r, c in table.items()}
        self._stats   = {"hits": 0, "misses": 0, "sets": 0}
        self._sweeper: Optional[asyncio.Task] = None

    # ── Region lookup ─────────────────────────────────────────

    def _find(self, region: RegionLike) -> Optional[_Region]:
        try:
            return self._regions[resolve_region(region)]
        except (ValueError, KeyError):
            log.error(f"Cache region {region!r} not found")
            return None

    def _require(self, region: RegionLike) -> _Region:
        found = self._find(region)
        if found is None:
            raise UnknownRegionError(region)
        return found

    def _live_entry(self, slot: _Region, key: str) -> Optional[CacheEntry]:
        entry = slot.entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del slot.entries[key]
            return None
        return entry

    # ── Public operations ─────────────────────────────────────

    def get(self, region: RegionLike, key: str, default: Any = None) -> Any:
        slot = self._find(region)
        if slot is None:
            return default

        entry = self._live_entry(slot, key)
        if entry is None:
            slot.misses += 1
            self._stats["misses"] += 1
            return default

        slot.hits += 1
        self._stats["hits"] += 1
        return copy.deepcopy(entry.value) if slot.config.use_clones else entry.value

    def set(self, region: RegionLike, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Store value. ttl=None uses the region default; ttl <= 0 never expires."""
        slot = self._require(region)
        ttl = slot.config.ttl if ttl is None else ttl
        expires_at = self._clock() + ttl if ttl > 0 else None
        if slot.config.use_clones:
            value = copy.deepcopy(value)
        slot.entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        self._stats["sets"] += 1
        return True

    def delete(self, region: RegionLike, key: str) -> bool:
        slot = self._require(region)
        return slot.entries.pop(key, None) is not None

    def has(self, region: RegionLike, key: str) -> bool:
        slot = self._find(region)
        if slot is None:
            return False
        return self._live_entry(slot, key) is not None

    def keys(self, region: RegionLike) -> List[str]:
        slot = self._find(region)
        if slot is None:
            return []
        now = self._clock()
        return [k for k, e in slot.entries.items() if not e.expired(now)]

    def clear(self, region: RegionLike) -> None:
        """Empty one region and reset its hit/miss counters."""
        self._require(region).reset()

    def clear_all(self) -> None:
        for slot in self._regions.values():
            slot.reset()
        self._stats = {"hits": 0, "misses": 0, "sets": 0}

    def invalidate_by_pattern(self, region: RegionLike, pattern: str) -> List[str]:
        """Delete every key in region matching the regex. Returns the removed keys."""
        slot = self._require(region)
        regex = re.compile(pattern)
        deleted = [k for k in list(slot.entries) if regex.search(k)]
        for key in deleted:
            del slot.entries[key]
        if deleted:
            log.info(f"Invalidated {len(deleted)} keys in {resolve_region(region).value} matching {pattern!r}")
        return deleted

    def stats(self) -> dict:
        now = self._clock()
        regions = {}
        for region, slot in self._regions.items():
            regions[region.value] = {
                "keys":   sum(1 for e in slot.entries.values() if not e.expired(now)),
                "hits":   slot.hits,
                "misses": slot.misses,
            }
        return {"regions": regions, "global": dict(self._stats)}

    async def preload(
        self,
        region: RegionLike,
        loader: Callable[["TieredCache", CacheRegion], Awaitable[None]],
    ) -> None:
        """Warm a region. Loader failures are logged, never raised."""
        self._require(region)
        target = resolve_region(region)
        try:
            await loader(self, target)
        except Exception as e:
            log.error(f"Preload of {target.value} failed: {e}")

    # ── Expiry sweeping ───────────────────────────────────────

    def purge_expired(self, region: Optional[RegionLike] = None) -> int:
        """Drop expired entries from one region (or all). Returns how many."""
        slots = [self._require(region)] if region is not None else list(self._regions.values())
        now = self._clock()
        removed = 0
        for slot in slots:
            dead = [k for k, e in slot.entries.items() if e.expired(now)]
            for key in dead:
                del slot.entries[key]
            removed += len(dead)
        return removed

    def _sweep_due(self) -> int:
        now = self._clock()
        removed = 0
        for region, slot in self._regions.items():
            if now >= slot.next_sweep:
                removed += self.purge_expired(region)
                slot.next_sweep = now + slot.config.check_period
        return removed

    async def _sweep_loop(self):
        tick = min(slot.config.check_period for slot in self._regions.values())
        while True:
            await asyncio.sleep(tick)
            removed = self._sweep_due()
            if removed:
                log.debug(f"Expiry sweep removed {removed} entries")

    def start(self) -> None:
        """Start the background expiry sweeper on the running loop."""
        if self._sweeper and not self._sweeper.done():
            return
        now = self._clock()
        for slot in self._regions.values():
            slot.next_sweep = now + slot.config.check_period
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())
        log.info("Cache expiry sweeper started")

    async def aclose(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None
        log.info("Cache expiry sweeper stopped")
