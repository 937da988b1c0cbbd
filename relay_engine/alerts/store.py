"""
Relay Engine — Watchlist Store
───────────────────────────────
Persistence for watch items. The scheduler only needs list_enabled(),
update_price() and record_alert(); the rest serve user edits from the API.

RedisWatchStore layout:
    watchlist:item:<id>   JSON document (WatchItem.to_dict())
    watchlist:index       set of every item id

Every update is an optimistic WATCH/MULTI transaction on the item key,
so a user edit and a scheduler price write never overwrite each other.
"""

import json
import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from relay_engine.alerts.models import PricePoint, WatchItem

log = logging.getLogger("relay.store")

ITEM_KEY  = "watchlist:item:{id}"
INDEX_KEY = "watchlist:index"

_EDITABLE = {"name", "target_price", "alerts_enabled"}


class WatchStore(Protocol):

    async def list_enabled(self) -> List[WatchItem]: ...

    async def update_price(self, item_id: str, price: float, point: PricePoint,
                           history_cap: int) -> None: ...

    async def record_alert(self, item_id: str, at: datetime, price: float,
                           target: float) -> None: ...

    async def get_item(self, item_id: str) -> Optional[WatchItem]: ...

    async def add_item(self, item: WatchItem) -> WatchItem: ...

    async def update_settings(self, item_id: str, **changes) -> WatchItem: ...

    async def remove_item(self, item_id: str) -> bool: ...


def _enabled(item: WatchItem) -> bool:
    return item.alerts_enabled and item.target_price > 0


def _apply_price(item: WatchItem, price: float, point: PricePoint, history_cap: int):
    item.current_price    = price
    item.last_price_check = point.timestamp
    item.price_history.append(point)
    if history_cap > 0 and len(item.price_history) > history_cap:
        del item.price_history[:-history_cap]


def _apply_alert(item: WatchItem, at: datetime, price: float, target: float):
    item.last_alert_at     = at
    item.last_alert_price  = price
    item.last_alert_target = target


def _apply_settings(item: WatchItem, changes: dict):
    unknown = set(changes) - _EDITABLE
    if unknown:
        raise ValueError(f"Cannot edit watch item fields: {sorted(unknown)}")
    for name, value in changes.items():
        setattr(item, name, value)


def _new_id(item: WatchItem) -> WatchItem:
    if not item.id:
        item.id = uuid.uuid4().hex
    return item


# ─────────────────────────────────────────────────────────────
# IN-MEMORY
# ─────────────────────────────────────────────────────────────

class MemoryWatchStore:
    """Process-local store; used when Redis is unreachable and in tests."""

    def __init__(self, items: Optional[List[WatchItem]] = None):
        self._items: Dict[str, WatchItem] = {}
        for item in items or []:
            self._items[item.id] = item

    async def list_enabled(self) -> List[WatchItem]:
        return [i for i in self._items.values() if _enabled(i)]

    async def get_item(self, item_id: str) -> Optional[WatchItem]:
        return self._items.get(item_id)

    async def update_price(self, item_id, price, point, history_cap):
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(item_id)
        _apply_price(item, price, point, history_cap)

    async def record_alert(self, item_id, at, price, target):
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(item_id)
        _apply_alert(item, at, price, target)

    async def add_item(self, item: WatchItem) -> WatchItem:
        item = _new_id(item)
        self._items[item.id] = item
        return item

    async def update_settings(self, item_id: str, **changes) -> WatchItem:
        item = self._items.get(item_id)
        if item is None:
            raise KeyError(item_id)
        _apply_settings(item, changes)
        return item

    async def remove_item(self, item_id: str) -> bool:
        return self._items.pop(item_id, None) is not None


# ─────────────────────────────────────────────────────────────
# REDIS
# ─────────────────────────────────────────────────────────────

class RedisWatchStore:

    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def _load(self, item_id: str) -> Optional[WatchItem]:
        raw = await self.redis.get(ITEM_KEY.format(id=item_id))
        return WatchItem.from_dict(json.loads(raw)) if raw else None

    async def _save(self, item: WatchItem):
        await self.redis.set(ITEM_KEY.format(id=item.id), json.dumps(item.to_dict()))

    async def _mutate(self, item_id: str, apply: Callable[[WatchItem], None]) -> WatchItem:
        """Load, apply and save under WATCH; start over if the key changed meanwhile."""
        key = ITEM_KEY.format(id=item_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if not raw:
                        raise KeyError(item_id)
                    item = WatchItem.from_dict(json.loads(raw))
                    apply(item)
                    pipe.multi()
                    pipe.set(key, json.dumps(item.to_dict()))
                    await pipe.execute()
                    return item
                except WatchError:
                    log.debug(f"Watch item {item_id} changed during update — retrying")
                    continue

    async def list_enabled(self) -> List[WatchItem]:
        ids = sorted(await self.redis.smembers(INDEX_KEY))
        items = []
        for item_id in ids:
            try:
                item = await self._load(item_id)
            except (ValueError, KeyError) as e:
                log.warning(f"Skipping unreadable watch item {item_id}: {e}")
                continue
            if item is None:
                # index points at a deleted document
                await self.redis.srem(INDEX_KEY, item_id)
                continue
            if _enabled(item):
                items.append(item)
        return items

    async def get_item(self, item_id: str) -> Optional[WatchItem]:
        return await self._load(item_id)

    async def update_price(self, item_id, price, point, history_cap):
        await self._mutate(item_id, lambda item: _apply_price(item, price, point, history_cap))

    async def record_alert(self, item_id, at, price, target):
        await self._mutate(item_id, lambda item: _apply_alert(item, at, price, target))

    async def add_item(self, item: WatchItem) -> WatchItem:
        item = _new_id(item)
        await self._save(item)
        await self.redis.sadd(INDEX_KEY, item.id)
        log.info(f"Watch item added: {item.display_name} ({item.id})")
        return item

    async def update_settings(self, item_id: str, **changes) -> WatchItem:
        return await self._mutate(item_id, lambda item: _apply_settings(item, changes))

    async def remove_item(self, item_id: str) -> bool:
        removed = await self.redis.delete(ITEM_KEY.format(id=item_id))
        await self.redis.srem(INDEX_KEY, item_id)
        return bool(removed)
