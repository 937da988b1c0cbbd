"""
Relay Engine — Price Alert Scheduler
═══════════════════════════════════════════════════════════════════════

Every interval (3h by default, first run immediately on start):

  1. list watch items with alerts enabled and a positive target
  2. re-price them in batches of batch_size, items of one batch
     concurrently, batch_delay_s pause between batches
  3. write the new price and append it to the item's history
  4. alert when the price is at/below target, dropped significantly
     since the last known price, and the item is out of cooldown;
     the alert is sent before anything is written, so a failed send
     leaves the item as it was and the next sweep tries again

A failing item never stops the sweep; it is counted and skipped.
Marketplace pacing itself lives in the request queue behind
price_lookup, not here.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from relay_engine import config
from relay_engine.alerts.models import (
    AlertEvent, ItemRef, PricePoint, PriceQuote, SweepReport, UpdateOutcome, WatchItem,
)
from relay_engine.alerts.notifier import NotificationSink
from relay_engine.alerts.policy import should_alert
from relay_engine.alerts.store import WatchStore

log = logging.getLogger("relay.scheduler")

PriceLookup = Callable[[ItemRef], Awaitable[PriceQuote]]

JOB_ID  = "price_update"
GRACE_S = 300   # misfire grace window


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def batches(items: List[WatchItem], size: int) -> List[List[WatchItem]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class SchedulerConfig:
    interval_s:       float = config.PRICE_UPDATE_INTERVAL_S
    batch_size:       int = config.ALERT_BATCH_SIZE
    batch_delay_s:    float = config.ALERT_BATCH_DELAY_S
    min_drop_percent: float = config.MIN_PRICE_DROP_PERCENT
    min_drop_amount:  float = config.MIN_PRICE_DROP_AMOUNT
    cooldown_s:       float = config.PRICE_ALERT_COOLDOWN_S
    history_cap:      int = config.PRICE_HISTORY_CAP


class AlertScheduler:

    def __init__(
        self,
        store: WatchStore,
        price_lookup: PriceLookup,
        notifier: NotificationSink,
        cfg: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store        = store
        self.price_lookup = price_lookup
        self.notifier     = notifier
        self.config       = cfg or SchedulerConfig()
        self._clock       = clock

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._background: Set[asyncio.Task] = set()
        self.last_report: Optional[SweepReport] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    # ─────────────────────────────────────────────────────────
    # CONTROL
    # ─────────────────────────────────────────────────────────

    def start(self):
        """Must be called from inside the running event loop."""
        if self._scheduler is not None:
            log.warning("Price scheduler already running — ignoring start call")
            return

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop(), timezone="UTC")
        scheduler.add_job(
            self.run_price_update,
            IntervalTrigger(seconds=self.config.interval_s, timezone="UTC"),
            id                 = JOB_ID,
            name               = "Watchlist price update",
            next_run_time      = utcnow(),   # first sweep right away
            max_instances      = 1,
            coalesce           = True,
            misfire_grace_time = GRACE_S,
            replace_existing   = True,
        )
        scheduler.start()
        self._scheduler = scheduler
        log.info(f"Price scheduler live — every {self.config.interval_s / 3600:g}h")

    def stop(self):
        for task in list(self._background):
            task.cancel()
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        log.info("Price scheduler stopped")

    def status(self) -> dict:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time:
                next_run = job.next_run_time.isoformat()
        report = self.last_report
        return {
            "running":     self.is_running,
            "interval_s":  self.config.interval_s,
            "next_run":    next_run,
            "last_run":    self.last_run_at.isoformat() if self.last_run_at else None,
            "last_report": asdict(report) if report else None,
        }

    def trigger_now(self) -> dict:
        """Out-of-schedule sweep in the background (admin / testing)."""
        task = asyncio.get_running_loop().create_task(self.run_price_update())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return {"triggered": True}

    # ─────────────────────────────────────────────────────────
    # SWEEP
    # ─────────────────────────────────────────────────────────

    async def run_price_update(self) -> Optional[SweepReport]:
        try:
            return await self._sweep()
        except Exception as e:
            log.error(f"Price update sweep failed: {e}", exc_info=True)
            return None

    async def _sweep(self) -> Optional[SweepReport]:
        t0 = time.monotonic()
        self.last_run_at = self._clock()

        items = [i for i in await self.store.list_enabled() if i.target_price > 0]
        if not items:
            log.info("No watchlist items with alerts enabled")
            return None

        log.info(f"Found {len(items)} items to check")
        report = SweepReport(total=len(items))
        groups = batches(items, self.config.batch_size)

        for n, batch in enumerate(groups, 1):
            outcomes = await asyncio.gather(*(self.update_item_price(i) for i in batch))
            for outcome in outcomes:
                report.record(outcome)
            if n < len(groups):
                await asyncio.sleep(self.config.batch_delay_s)

        report.duration_s = round(time.monotonic() - t0, 3)
        self.last_report  = report
        log.info(
            f"Sweep done — {report.updated} updated  {report.alerted} alerts  "
            f"{report.failed} failed  {report.duration_s}s"
        )
        return report

    async def update_item_price(self, item: WatchItem) -> UpdateOutcome:
        try:
            quote = await self.price_lookup(item.ref)
            if not quote or not quote.success or not quote.price or quote.price <= 0:
                log.warning(f"Failed to get price for {item.display_name}")
                return UpdateOutcome.FAILED

            current  = quote.price
            previous = item.current_price or current
            now      = self._clock()
            point    = PricePoint(price=current, timestamp=now)

            if should_alert(
                current, item.target_price, previous, item, now,
                min_amount=self.config.min_drop_amount,
                min_percent=self.config.min_drop_percent,
                cooldown_s=self.config.cooldown_s,
            ):
                # nothing is written unless the alert went out
                await self.notifier.notify(
                    AlertEvent(item=item, old_price=previous, new_price=current, timestamp=now)
                )
                await self.store.update_price(item.id, current, point, self.config.history_cap)
                await self.store.record_alert(item.id, now, current, item.target_price)
                log.info(
                    f"Alert: {item.display_name} ${previous:.2f} → ${current:.2f} "
                    f"(target ${item.target_price:.2f})"
                )
                return UpdateOutcome.ALERTED

            await self.store.update_price(item.id, current, point, self.config.history_cap)
            return UpdateOutcome.UPDATED

        except Exception as e:
            log.error(f"Error updating {item.display_name} ({item.id}): {e}")
            return UpdateOutcome.FAILED
