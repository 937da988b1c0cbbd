"""
Relay Engine
─────────────
Resilience and caching layer between the stats backend and its
third-party providers:

    cache/        tiered in-memory cache + deduping populator
    resilience/   timeout / retry-with-backoff + serialized request queue
    market/       marketplace client built on the two above
    alerts/       watchlist price-alert scheduler and its collaborators
"""

__version__ = "1.0.0"
