"""
Relay Engine — Serialized Request Queue
────────────────────────────────────────
Single-flight FIFO dispatcher for providers that throttle hard
(the community marketplace answers 429 if called more than roughly
once every 3 seconds).

Per task:
  queued → dispatched → succeeded
                      → retry-scheduled → queued (at the HEAD)
                      → failed-permanently

  success            failure count reset, spacing back to min_delay
  429                long randomized cooldown, then retried first
  timeout/conn error spacing escalates exponentially, then retried first
  anything else      rejected immediately

A worker keeps its slot while it cools down, so no newer task can
overtake a retried one.
"""

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Tuple

from relay_engine import config
from relay_engine.errors import (
    QueueClosedError, is_connection_error, is_rate_limited, is_timeout, status_of,
)

log = logging.getLogger("relay.queue")

Operation = Callable[[], Awaitable[Any]]


@dataclass
class QueueConfig:
    min_delay:       float = config.QUEUE_MIN_DELAY_S
    max_delay:       float = config.QUEUE_MAX_DELAY_S
    concurrency:     int = config.QUEUE_CONCURRENCY
    max_retries:     int = config.QUEUE_MAX_RETRIES
    rate_limit_wait: Tuple[float, float] = config.RATE_LIMIT_WAIT_S


@dataclass
class QueueTask:
    operation: Operation
    future:    asyncio.Future
    retries:   int = 0


class RequestQueue:

    def __init__(self, cfg: Optional[QueueConfig] = None, name: str = "market"):
        self.config = cfg or QueueConfig()
        self.name   = name

        self._queue:   Deque[QueueTask] = deque()
        self._workers: List[asyncio.Task] = []
        self._active   = 0
        self._closed   = False

        self._last_dispatch     = 0.0
        self._current_delay     = self.config.min_delay
        self._failure_count     = 0
        self._last_rate_limit   = 0.0

    # ── Introspection ─────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def current_delay(self) -> float:
        return self._current_delay

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def stats(self) -> dict:
        return {
            "name":            self.name,
            "queued":          len(self._queue),
            "active":          self._active,
            "current_delay_s": round(self._current_delay, 3),
            "failure_count":   self._failure_count,
            "last_rate_limit": self._last_rate_limit or None,
        }

    # ── Public API ────────────────────────────────────────────

    async def enqueue(self, operation: Operation) -> Any:
        """Queue a zero-argument coroutine function; resolves with its result."""
        if self._closed:
            raise QueueClosedError(f"Request queue {self.name} is closed")
        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueueTask(operation=operation, future=future))
        self._drain()
        return await future

    async def aclose(self):
        """Stop dispatching and fail everything still waiting."""
        self._closed = True
        for worker in self._workers:
            worker.cancel()
        for worker in self._workers:
            try:
                await worker
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        while self._queue:
            task = self._queue.popleft()
            if not task.future.done():
                task.future.set_exception(QueueClosedError(f"Request queue {self.name} closed"))
        log.info(f"[{self.name}] queue closed")

    # ── Draining ──────────────────────────────────────────────

    def _drain(self):
        self._workers = [w for w in self._workers if not w.done()]
        loop = asyncio.get_running_loop()
        # busy workers (dispatching or cooling down) cannot take new work
        while (len(self._workers) < self.config.concurrency
               and len(self._workers) - self._active < len(self._queue)):
            self._workers.append(loop.create_task(self._worker()))

    async def _worker(self):
        while self._queue and not self._closed:
            task = self._queue.popleft()
            if task.future.done():
                # caller went away (cancelled) before dispatch
                continue
            self._active += 1
            try:
                await self._dispatch(task)
            except asyncio.CancelledError:
                if not task.future.done():
                    task.future.set_exception(QueueClosedError(f"Request queue {self.name} closed"))
                raise
            finally:
                self._active -= 1

    async def _wait_for_slot(self):
        while True:
            since_last = time.monotonic() - self._last_dispatch
            wait = max(0.0, self._current_delay - since_last)
            if wait <= 0:
                break
            await asyncio.sleep(wait)
        self._last_dispatch = time.monotonic()

    async def _dispatch(self, task: QueueTask):
        await self._wait_for_slot()
        try:
            result = await task.operation()
        except Exception as err:
            await self._handle_failure(task, err)
            return

        self._failure_count = 0
        self._current_delay = self.config.min_delay
        if not task.future.done():
            task.future.set_result(result)

    async def _handle_failure(self, task: QueueTask, err: Exception):
        rate_limited = is_rate_limited(err)
        transient    = is_timeout(err) or is_connection_error(err)
        log.error(f"[{self.name}] request failed (status={status_of(err)}): {err}")

        if (rate_limited or transient) and task.retries < self.config.max_retries:
            self._failure_count += 1

            if rate_limited:
                self._last_rate_limit = time.time()
                wait = random.uniform(*self.config.rate_limit_wait)
                log.warning(f"[{self.name}] rate limited (429) — waiting {wait:.1f}s before retry")
            else:
                escalated = self.config.min_delay * (2 ** self._failure_count)
                self._current_delay = max(self._current_delay, min(self.config.max_delay, escalated))
                wait = self._current_delay
                log.warning(f"[{self.name}] backing off {wait:.1f}s (failures={self._failure_count})")

            await asyncio.sleep(wait)
            task.retries += 1
            self._queue.appendleft(task)
            return

        log.error(f"[{self.name}] request failed permanently after {task.retries} retries: {err}")
        if not task.future.done():
            task.future.set_exception(err)
