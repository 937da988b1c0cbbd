"""
Relay Engine — Runtime
───────────────────────
Composition root. Every long-lived component is built here once and
handed to whoever needs it; nothing in the package is a module-level
singleton.

    cache ─ populator ─┐
    queue ─────────────┼─ market client ─ lookup_price ─┐
    http ──────────────┘                                ├─ alert scheduler
    redis ─ watch store / notification sink ────────────┘

If Redis is unreachable the store and sink fall back to memory.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as aioredis

from relay_engine import config
from relay_engine.alerts.notifier import (
    MemoryNotificationSink, NotificationSink, RedisNotificationSink,
)
from relay_engine.alerts.scheduler import AlertScheduler, SchedulerConfig
from relay_engine.alerts.store import MemoryWatchStore, RedisWatchStore, WatchStore
from relay_engine.cache.populator import DedupingPopulator
from relay_engine.cache.tiered_cache import TieredCache
from relay_engine.market.client import MARKET_HEADERS, MarketClient
from relay_engine.resilience.request_queue import QueueConfig, RequestQueue
from relay_engine.resilience.retry import TIMEOUTS

log = logging.getLogger("relay.runtime")


@dataclass
class Runtime:
    cache:             TieredCache
    populator:         DedupingPopulator
    queue:             RequestQueue
    http:              httpx.AsyncClient
    market:            MarketClient
    store:             WatchStore
    notifier:          NotificationSink
    scheduler:         AlertScheduler
    redis:             Optional[aioredis.Redis] = None
    scheduler_enabled: bool = True

    async def start(self):
        self.cache.start()
        if self.scheduler_enabled:
            self.scheduler.start()
        log.info("Runtime started")

    async def aclose(self):
        self.scheduler.stop()
        await self.cache.aclose()
        await self.queue.aclose()
        await self.http.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        log.info("Runtime closed")


async def connect_redis(url: Optional[str]) -> Optional[aioredis.Redis]:
    if not url:
        return None
    client = aioredis.from_url(url, decode_responses=True, socket_timeout=2)
    try:
        await client.ping()
    except Exception as e:
        log.warning(f"Redis unavailable ({e}) - using in-memory watchlist")
        await client.aclose()
        return None
    log.info("Redis connected")
    return client


def build_market_http(base_url: str = config.MARKET_BASE_URL,
                      transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers=MARKET_HEADERS,
        timeout=TIMEOUTS["steam_market"],
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        transport=transport,
    )


async def build_runtime(
    redis_url: Optional[str] = config.REDIS_URL,
    *,
    http: Optional[httpx.AsyncClient] = None,
    queue_config: Optional[QueueConfig] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    market_retry: Optional[dict] = None,
    scheduler_enabled: bool = config.SCHEDULER_ENABLED,
) -> Runtime:
    cache     = TieredCache()
    populator = DedupingPopulator(cache)
    queue     = RequestQueue(queue_config, name="market")
    http      = http or build_market_http()
    market    = MarketClient(http, queue, populator, retry=market_retry)

    redis = await connect_redis(redis_url)
    if redis is not None:
        store    = RedisWatchStore(redis)
        notifier = RedisNotificationSink(redis)
    else:
        store    = MemoryWatchStore()
        notifier = MemoryNotificationSink()

    scheduler = AlertScheduler(store, market.lookup_price, notifier, scheduler_config)

    return Runtime(
        cache=cache, populator=populator, queue=queue, http=http, market=market,
        store=store, notifier=notifier, scheduler=scheduler, redis=redis,
        scheduler_enabled=scheduler_enabled,
    )
