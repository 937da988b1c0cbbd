"""Watchlist price sweeps and drop alerts."""

from relay_engine.alerts.models import (
    AlertEvent, ItemRef, PricePoint, PriceQuote, SweepReport, UpdateOutcome, WatchItem,
)
from relay_engine.alerts.notifier import (
    MemoryNotificationSink, NotificationSink, RedisNotificationSink, format_alert_message,
)
from relay_engine.alerts.policy import should_alert
from relay_engine.alerts.scheduler import AlertScheduler, SchedulerConfig
from relay_engine.alerts.store import MemoryWatchStore, RedisWatchStore, WatchStore
