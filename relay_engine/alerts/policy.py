"""
Relay Engine — Alert Policy
────────────────────────────
Decides whether a fresh price for a watch item deserves an alert.

An alert needs all three:
  1. current price at or below the item's target
  2. a significant drop since the last known price,
     by amount OR by percentage
  3. the per-item cooldown to have elapsed since the previous alert
"""

import logging
from datetime import datetime
from typing import Optional

from relay_engine import config
from relay_engine.alerts.models import WatchItem

log = logging.getLogger("relay.policy")


def is_significant_drop(
    current: float,
    previous: float,
    min_amount: float = config.MIN_PRICE_DROP_AMOUNT,
    min_percent: float = config.MIN_PRICE_DROP_PERCENT,
) -> bool:
    if previous <= 0:
        return False
    drop = previous - current
    drop_pct = drop / previous * 100
    return drop >= min_amount or drop_pct >= min_percent


def cooldown_elapsed(
    last_alert_at: Optional[datetime],
    now: datetime,
    cooldown_s: float = config.PRICE_ALERT_COOLDOWN_S,
) -> bool:
    if last_alert_at is None:
        return True
    return (now - last_alert_at).total_seconds() >= cooldown_s


def should_alert(
    current: float,
    target: float,
    previous: float,
    item: WatchItem,
    now: datetime,
    min_amount: float = config.MIN_PRICE_DROP_AMOUNT,
    min_percent: float = config.MIN_PRICE_DROP_PERCENT,
    cooldown_s: float = config.PRICE_ALERT_COOLDOWN_S,
) -> bool:
    if current > target:
        return False

    if not is_significant_drop(current, previous, min_amount, min_percent):
        log.debug(f"{item.display_name}: drop {previous:.2f} → {current:.2f} below thresholds")
        return False

    if not cooldown_elapsed(item.last_alert_at, now, cooldown_s):
        log.debug(f"{item.display_name}: alert cooldown still active")
        return False

    return True
