from relay_engine.cache.regions import REGIONS, CacheRegion, RegionConfig
from relay_engine.cache.tiered_cache import MISSING, TieredCache
from relay_engine.cache.populator import DedupingPopulator

__all__ = ["REGIONS", "CacheRegion", "RegionConfig", "MISSING", "TieredCache", "DedupingPopulator"]
