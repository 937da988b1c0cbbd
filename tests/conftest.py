import fnmatch
from datetime import datetime, timezone
from typing import Dict, List, Set

import httpx
import pytest
from redis.exceptions import WatchError

from relay_engine.alerts.models import PriceQuote, WatchItem
from relay_engine.resilience.request_queue import QueueConfig

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

# No waiting anywhere: spacing, cooldown and retry delays all zero.
FAST_QUEUE = QueueConfig(min_delay=0.0, max_delay=0.0, concurrency=1, max_retries=3,
                         rate_limit_wait=(0.0, 0.0))
FAST_RETRY = {"initial_delay": 0.0, "max_delay": 0.0, "jitter": 0.0}


class FakeClock:
    """Monotonic stand-in for TieredCache(clock=...)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakePipeline:
    """WATCH/MULTI/EXEC over FakeRedis: EXEC fails if a watched key was written."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.watched: Dict[str, int] = {}
        self.buffered: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.reset()

    async def reset(self):
        self.watched.clear()
        self.buffered.clear()

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.redis.versions.get(key, 0)

    async def get(self, key):
        return await self.redis.get(key)

    def multi(self):
        self.buffered.clear()

    def set(self, key, value):
        self.buffered.append((key, value))
        return self

    async def execute(self):
        try:
            if any(self.redis.versions.get(k, 0) != v for k, v in self.watched.items()):
                raise WatchError("Watched variable changed.")
            return [self.redis.write(key, value) for key, value in self.buffered]
        finally:
            await self.reset()


class FakeRedis:
    """The handful of redis.asyncio calls the store and sink make."""

    def __init__(self):
        self.kv:    Dict[str, str] = {}
        self.sets:  Dict[str, Set[str]] = {}
        self.lists: Dict[str, List[str]] = {}
        self.versions: Dict[str, int] = {}
        self.closed = False

    async def ping(self):
        return True

    async def get(self, key):
        return self.kv.get(key)

    def write(self, key, value):
        self.kv[key] = value
        self.versions[key] = self.versions.get(key, 0) + 1
        return True

    async def set(self, key, value):
        return self.write(key, value)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += int(self.kv.pop(key, None) is not None)
            self.versions[key] = self.versions.get(key, 0) + 1
        return removed

    async def keys(self, pattern="*"):
        return [k for k in self.kv if fnmatch.fnmatch(k, pattern)]

    async def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def srem(self, key, *members):
        self.sets.setdefault(key, set()).difference_update(members)
        return len(members)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for v in values:
            lst.insert(0, v)
        return len(lst)

    async def ltrim(self, key, start, end):
        lst = self.lists.get(key, [])
        self.lists[key] = lst[start:end + 1]
        return True

    async def lrange(self, key, start, end):
        lst = self.lists.get(key, [])
        return lst[start:] if end == -1 else lst[start:end + 1]

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True


def http_error(status: int, url: str = "https://steamcommunity.com/market/priceoverview/"):
    request = httpx.Request("GET", url)
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def make_item(item_id="item-1", target=10.0, current=12.0, **kw) -> WatchItem:
    defaults = dict(
        id=item_id, owner_id="user-1", appid=730,
        hash_name=f"AK-47 | Redline ({item_id})", name=f"Redline {item_id}",
        target_price=target, current_price=current,
    )
    defaults.update(kw)
    return WatchItem(**defaults)


class StaticPrices:
    """price_lookup stand-in: hash_name → price, Exception or PriceQuote."""

    def __init__(self, prices):
        self.prices = prices
        self.calls: List[str] = []

    async def __call__(self, ref):
        self.calls.append(ref.hash_name)
        value = self.prices.get(ref.hash_name)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, PriceQuote):
            return value
        if value is None:
            return PriceQuote(success=False)
        return PriceQuote(success=True, price=value)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()
