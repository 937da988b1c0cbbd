"""
Relay Engine — Notification Sink
─────────────────────────────────
Turns an AlertEvent into a user notification document.
"""

import json
import logging
import uuid
from typing import List, Protocol
from urllib.parse import quote

import redis.asyncio as aioredis

from relay_engine.alerts.models import AlertEvent

log = logging.getLogger("relay.notify")

NOTIFICATIONS_KEY = "notifications:{owner}"
NOTIFICATIONS_CAP = 200


class NotificationSink(Protocol):

    async def notify(self, event: AlertEvent) -> None: ...


def format_alert_message(event: AlertEvent) -> str:
    return (
        f"{event.item.display_name} price dropped to ${event.new_price:.2f} "
        f"(Target: ${event.item.target_price:.2f})"
    )


def build_notification(event: AlertEvent) -> dict:
    item = event.item
    return {
        "id":         uuid.uuid4().hex,
        "type":       "price_drop",
        "title":      "Price Alert",
        "message":    format_alert_message(event),
        "read":       False,
        "url":        f"/marketplace?search={quote(item.hash_name)}&appid={item.appid}",
        "created_at": event.timestamp.isoformat(),
        "data":       event.to_dict(),
    }


class RedisNotificationSink:
    """LPUSH onto notifications:<owner>, trimmed to the newest NOTIFICATIONS_CAP."""

    def __init__(self, redis: aioredis.Redis, cap: int = NOTIFICATIONS_CAP):
        self.redis = redis
        self.cap   = cap

    async def notify(self, event: AlertEvent) -> None:
        key = NOTIFICATIONS_KEY.format(owner=event.item.owner_id)
        doc = build_notification(event)
        await self.redis.lpush(key, json.dumps(doc))
        await self.redis.ltrim(key, 0, self.cap - 1)
        log.info(f"Notification → {event.item.owner_id}: {doc['message']}")


class MemoryNotificationSink:

    def __init__(self):
        self.sent: List[dict] = []

    async def notify(self, event: AlertEvent) -> None:
        doc = build_notification(event)
        self.sent.append(doc)
        log.info(f"Notification → {event.item.owner_id}: {doc['message']}")
