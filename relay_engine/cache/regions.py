"""
Relay Engine — Cache Regions
─────────────────────────────
Single source of truth for every cache region and its durations.
Organised by how fast the upstream data actually changes.

The set is closed: regions are declared here and nowhere else.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Union


class CacheRegion(enum.Enum):
    HERO_DATA     = "heroData"
    PLAYER_DATA   = "playerData"
    MATCH_DATA    = "matchData"
    MATCH_HISTORY = "matchHistory"
    META_DATA     = "metaData"
    IMAGE_DATA    = "imageData"
    CS2_DATA      = "cs2Data"
    MARKET_DATA   = "marketData"
    RATE_LIMITING = "rateLimiting"


@dataclass(frozen=True)
class RegionConfig:
    ttl:          float          # default seconds an entry lives
    check_period: float          # seconds between expiry sweeps
    use_clones:   bool = False   # deep-copy values in and out


# ── Per-region durations (seconds) ────────────────────────────

REGIONS: Dict[CacheRegion, RegionConfig] = {
    # Static reference data: hero lists, item schemas
    CacheRegion.HERO_DATA:     RegionConfig(ttl=7 * 86400,  check_period=3600),
    # Player profiles and stats
    CacheRegion.PLAYER_DATA:   RegionConfig(ttl=3600,       check_period=600),
    CacheRegion.MATCH_DATA:    RegionConfig(ttl=2 * 3600,   check_period=600),
    CacheRegion.MATCH_HISTORY: RegionConfig(ttl=15 * 60,    check_period=300),
    # Meta and pro player data
    CacheRegion.META_DATA:     RegionConfig(ttl=3600,       check_period=600),
    CacheRegion.IMAGE_DATA:    RegionConfig(ttl=30 * 86400, check_period=3600),
    CacheRegion.CS2_DATA:      RegionConfig(ttl=30 * 60,    check_period=300),
    # Market quotes: 15 min keeps marketplace calls under its 429 threshold
    CacheRegion.MARKET_DATA:   RegionConfig(ttl=15 * 60,    check_period=300),
    # Rate-limit bookkeeping
    CacheRegion.RATE_LIMITING: RegionConfig(ttl=60,         check_period=60),
}

# ── Per-call TTLs used by the market client ──────────────────
MARKET_TTL = {
    "price_overview": 600,    # 10 minutes
    "price_history":  600,
    "search_page":    600,
    "trending":       1800,   # 30 minutes
}


def resolve_region(region: Union[CacheRegion, str]) -> CacheRegion:
    """Map a CacheRegion or its string value onto the enum. Raises ValueError."""
    if isinstance(region, CacheRegion):
        return region
    return CacheRegion(region)
