import asyncio

import pytest

from relay_engine.cache import MISSING, CacheRegion, RegionConfig, TieredCache
from relay_engine.errors import UnknownRegionError


def test_entry_expires_after_region_ttl(clock):
    cache = TieredCache(clock=clock)
    cache.set(CacheRegion.RATE_LIMITING, "ip:1", 3)  # 60s region default

    clock.advance(59)
    assert cache.get(CacheRegion.RATE_LIMITING, "ip:1") == 3

    clock.advance(1)
    assert cache.get(CacheRegion.RATE_LIMITING, "ip:1") is None
    assert not cache.has(CacheRegion.RATE_LIMITING, "ip:1")


def test_explicit_ttl_overrides_region_default(clock):
    cache = TieredCache(clock=clock)
    cache.set(CacheRegion.HERO_DATA, "heroes", ["axe"], ttl=5)
    clock.advance(5)
    assert cache.get(CacheRegion.HERO_DATA, "heroes") is None


def test_non_positive_ttl_never_expires(clock):
    cache = TieredCache(clock=clock)
    cache.set(CacheRegion.MARKET_DATA, "pinned", "v", ttl=0)
    clock.advance(10 ** 9)
    assert cache.get(CacheRegion.MARKET_DATA, "pinned") == "v"


def test_missing_sentinel_distinguishes_cached_none():
    cache = TieredCache()
    cache.set(CacheRegion.PLAYER_DATA, "nobody", None)
    assert cache.get(CacheRegion.PLAYER_DATA, "nobody", MISSING) is None
    assert cache.get(CacheRegion.PLAYER_DATA, "somebody", MISSING) is MISSING
    assert not MISSING


def test_region_accepts_string_value():
    cache = TieredCache()
    cache.set("heroData", "k", 1)
    assert cache.get(CacheRegion.HERO_DATA, "k") == 1


def test_unknown_region():
    cache = TieredCache()
    with pytest.raises(UnknownRegionError) as exc:
        cache.set("nope", "k", 1)
    assert "nope" in str(exc.value)
    with pytest.raises(UnknownRegionError):
        cache.clear("nope")
    with pytest.raises(UnknownRegionError):
        cache.invalidate_by_pattern("nope", ".*")

    assert cache.get("nope", "k") is None
    assert cache.get("nope", "k", "fallback") == "fallback"
    assert cache.has("nope", "k") is False


def test_use_clones_isolates_stored_value():
    cache = TieredCache(regions={
        CacheRegion.PLAYER_DATA: RegionConfig(ttl=60, check_period=60, use_clones=True),
    })
    profile = {"name": "p1", "matches": [1, 2]}
    cache.set(CacheRegion.PLAYER_DATA, "p1", profile)
    profile["matches"].append(3)

    got = cache.get(CacheRegion.PLAYER_DATA, "p1")
    assert got["matches"] == [1, 2]
    got["name"] = "changed"
    assert cache.get(CacheRegion.PLAYER_DATA, "p1")["name"] == "p1"


def test_shared_reference_without_clones():
    cache = TieredCache()
    value = {"a": 1}
    cache.set(CacheRegion.META_DATA, "k", value)
    assert cache.get(CacheRegion.META_DATA, "k") is value


def test_invalidate_by_pattern():
    cache = TieredCache()
    for key in ("price_730_a", "price_730_b", "history_730_a"):
        cache.set(CacheRegion.MARKET_DATA, key, 1)

    removed = cache.invalidate_by_pattern(CacheRegion.MARKET_DATA, "^price_")
    assert sorted(removed) == ["price_730_a", "price_730_b"]
    assert cache.keys(CacheRegion.MARKET_DATA) == ["history_730_a"]


def test_pattern_matching_nothing_removes_nothing():
    cache = TieredCache()
    cache.set(CacheRegion.MARKET_DATA, "price_730_a", 1)
    cache.set(CacheRegion.MARKET_DATA, "history_730_a", 2)

    assert cache.invalidate_by_pattern(CacheRegion.MARKET_DATA, "^nomatch$") == []
    assert sorted(cache.keys(CacheRegion.MARKET_DATA)) == ["history_730_a", "price_730_a"]


def test_empty_pattern_removes_every_key():
    cache = TieredCache()
    cache.set(CacheRegion.IMAGE_DATA, "a", 1)
    cache.set(CacheRegion.IMAGE_DATA, "b", 2)
    cache.set(CacheRegion.META_DATA, "c", 3)

    assert len(cache.invalidate_by_pattern(CacheRegion.IMAGE_DATA, "")) == 2
    assert cache.keys(CacheRegion.IMAGE_DATA) == []
    assert cache.has(CacheRegion.META_DATA, "c")


def test_delete_and_clear():
    cache = TieredCache()
    cache.set(CacheRegion.MATCH_DATA, "m1", 1)
    cache.set(CacheRegion.MATCH_DATA, "m2", 2)
    assert cache.delete(CacheRegion.MATCH_DATA, "m1") is True
    assert cache.delete(CacheRegion.MATCH_DATA, "m1") is False
    cache.clear(CacheRegion.MATCH_DATA)
    assert cache.keys(CacheRegion.MATCH_DATA) == []


def test_stats_count_hits_misses_and_sets(clock):
    cache = TieredCache(clock=clock)
    cache.set(CacheRegion.CS2_DATA, "k", 1)
    cache.get(CacheRegion.CS2_DATA, "k")
    cache.get(CacheRegion.CS2_DATA, "k")
    cache.get(CacheRegion.CS2_DATA, "other")

    stats = cache.stats()
    assert stats["global"] == {"hits": 2, "misses": 1, "sets": 1}
    assert stats["regions"]["cs2Data"] == {"keys": 1, "hits": 2, "misses": 1}
    assert set(stats["regions"]) == {r.value for r in CacheRegion}

    cache.clear_all()
    stats = cache.stats()
    assert stats["global"] == {"hits": 0, "misses": 0, "sets": 0}
    assert stats["regions"]["cs2Data"] == {"keys": 0, "hits": 0, "misses": 0}


def test_clearing_a_region_resets_its_counters():
    cache = TieredCache()
    cache.set(CacheRegion.CS2_DATA, "k", 1)
    cache.get(CacheRegion.CS2_DATA, "k")
    cache.get(CacheRegion.META_DATA, "missing")

    cache.clear(CacheRegion.CS2_DATA)
    stats = cache.stats()
    assert stats["regions"]["cs2Data"] == {"keys": 0, "hits": 0, "misses": 0}
    assert stats["regions"]["metaData"]["misses"] == 1
    assert stats["global"] == {"hits": 1, "misses": 1, "sets": 1}


def test_purge_expired_counts_removed(clock):
    cache = TieredCache(clock=clock)
    cache.set(CacheRegion.MATCH_HISTORY, "old", 1, ttl=10)
    cache.set(CacheRegion.MATCH_HISTORY, "new", 2, ttl=100)
    cache.set(CacheRegion.PLAYER_DATA, "old", 3, ttl=10)
    clock.advance(20)

    assert cache.purge_expired(CacheRegion.MATCH_HISTORY) == 1
    assert cache.purge_expired() == 1
    assert cache.keys(CacheRegion.MATCH_HISTORY) == ["new"]


@pytest.mark.asyncio
async def test_preload_fills_region_and_swallows_failures():
    cache = TieredCache()

    async def loader(c, region):
        c.set(region, "heroes", ["axe", "lina"])

    async def broken(c, region):
        raise RuntimeError("upstream down")

    await cache.preload(CacheRegion.HERO_DATA, loader)
    assert cache.get(CacheRegion.HERO_DATA, "heroes") == ["axe", "lina"]

    await cache.preload(CacheRegion.HERO_DATA, broken)
    with pytest.raises(UnknownRegionError):
        await cache.preload("nope", loader)


@pytest.mark.asyncio
async def test_sweeper_start_is_idempotent_and_stops():
    cache = TieredCache(regions={
        CacheRegion.RATE_LIMITING: RegionConfig(ttl=0.01, check_period=0.01),
    })
    cache.start()
    first = cache._sweeper
    cache.start()
    assert cache._sweeper is first

    cache.set(CacheRegion.RATE_LIMITING, "k", 1)
    await asyncio.sleep(0.05)
    assert cache._regions[CacheRegion.RATE_LIMITING].entries == {}

    await cache.aclose()
    assert cache._sweeper is None
    await cache.aclose()
