from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from q3report.clock import Clock, SystemClock
from q3report.db import FileRecordStore
from q3report.matchlog.models import FileIdentity
from q3report.telegram_bot import Sender, SendError

logger = logging.getLogger("q3report.delivery")


@dataclass
class DeliveryItem:
    identity: FileIdentity
    text: str
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: str = ""
    in_flight: bool = False


class DeliveryQueue:
    """FIFO of rendered reports waiting to be sent, with per-item retry state.

    Up to `concurrency` attempts run at once and each is bounded by
    `attempt_timeout_seconds`, so an item stuck in backoff or on a slow send
    never holds back the items behind it for longer than its own slot.
    """

    def __init__(
        self,
        sender: Sender,
        store: FileRecordStore,
        destination_id: str,
        *,
        max_attempts: int = 5,
        base_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        attempt_timeout_seconds: float = 15.0,
        concurrency: int = 2,
        clock: Optional[Clock] = None,
    ) -> None:
        self._sender = sender
        self._store = store
        self._destination = destination_id
        self._max_attempts = max(1, int(max_attempts))
        self._base_backoff = max(0.0, float(base_backoff_seconds))
        self._max_backoff = max(self._base_backoff, float(max_backoff_seconds))
        self._timeout = max(0.001, float(attempt_timeout_seconds))
        self._concurrency = max(1, int(concurrency))
        self._clock = clock or SystemClock()

        self._items: List[DeliveryItem] = []
        self._tasks: Set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()

        self.delivered = 0
        self.failed = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def pending(self) -> Tuple[FileIdentity, ...]:
        return tuple(it.identity for it in self._items)

    def submit(self, identity: FileIdentity, text: str) -> bool:
        if any(it.identity == identity for it in self._items):
            logger.debug("%s already queued", identity.path)
            return False
        self._items.append(DeliveryItem(identity=identity, text=text, next_attempt_at=self._clock.now()))
        self._wakeup.set()
        return True

    def backoff(self, attempts: int) -> float:
        """Delay after the `attempts`-th failed attempt."""
        return min(self._max_backoff, self._base_backoff * (2 ** max(0, attempts - 1)))

    # -----------------
    # State machine
    # -----------------

    def _remove(self, item: DeliveryItem) -> None:
        if item in self._items:
            self._items.remove(item)

    async def _attempt(self, item: DeliveryItem) -> None:
        try:
            outcome = await self._store.get(item.identity)
            if outcome is not None and outcome.is_terminal:
                logger.info("%s already %s; not sending", item.identity.path, outcome.state.value)
                self._remove(item)
                return

            item.attempts += 1
            try:
                await asyncio.wait_for(self._sender.send(self._destination, item.text), timeout=self._timeout)
            except asyncio.TimeoutError:
                await self._on_failure(item, SendError(f"no response within {self._timeout:g}s"))
            except SendError as e:
                await self._on_failure(item, e)
            else:
                await self._store.mark_delivered(item.identity)
                self._remove(item)
                self.delivered += 1
                logger.info("Delivered report for %s (attempt %d)", item.identity.path, item.attempts)
        finally:
            item.in_flight = False
            self._wakeup.set()

    async def _on_failure(self, item: DeliveryItem, err: SendError) -> None:
        item.last_error = str(err)
        if not err.retryable or item.attempts >= self._max_attempts:
            reason = f"delivery failed after {item.attempts} attempt(s): {err}"
            await self._store.mark_failed(item.identity, reason)
            self._remove(item)
            self.failed += 1
            logger.error("Giving up on %s: %s", item.identity.path, reason)
            return

        delay = self.backoff(item.attempts)
        if err.retry_after is not None:
            delay = max(delay, float(err.retry_after))
        item.next_attempt_at = self._clock.now() + delay
        logger.warning(
            "Delivery of %s failed (attempt %d/%d): %s; retrying in %.1fs",
            item.identity.path,
            item.attempts,
            self._max_attempts,
            err,
            delay,
        )

    # -----------------
    # Scheduling
    # -----------------

    def _in_flight(self) -> int:
        return sum(1 for it in self._items if it.in_flight)

    def _start_due(self) -> None:
        now = self._clock.now()
        free = self._concurrency - self._in_flight()
        for item in self._items:
            if free <= 0:
                break
            if item.in_flight or item.next_attempt_at > now:
                continue
            item.in_flight = True
            free -= 1
            task = asyncio.create_task(self._attempt(item))
            self._tasks.add(task)

    def _next_delay(self) -> Optional[float]:
        if self._in_flight() >= self._concurrency:
            return None
        waiting = [it.next_attempt_at for it in self._items if not it.in_flight]
        if not waiting:
            return None
        return max(0.0, min(waiting) - self._clock.now())

    def _reap(self) -> None:
        for task in [t for t in self._tasks if t.done()]:
            self._tasks.discard(task)
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                # StoreError and sender bugs are not delivery failures.
                raise exc

    async def _wait(self, delay: Optional[float], stop: asyncio.Event) -> None:
        waiters = [asyncio.ensure_future(self._wakeup.wait()), asyncio.ensure_future(stop.wait())]
        if delay is not None:
            waiters.append(asyncio.ensure_future(self._clock.sleep(delay)))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                if not w.done():
                    w.cancel()

    async def run(self, stop: asyncio.Event, *, until_idle: bool = False) -> None:
        """Deliver until `stop` is set (or, with `until_idle`, until the queue is empty).

        On stop, attempts already in flight are awaited; items not yet started
        stay in the store as pending/parsed and are picked up on the next start.
        """
        while True:
            self._wakeup.clear()
            self._reap()
            if stop.is_set():
                break
            self._start_due()
            if until_idle and not self._items:
                break
            await self._wait(self._next_delay(), stop)

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._reap()
        abandoned = [it for it in self._items if not it.in_flight]
        if abandoned:
            logger.info("Abandoning %d queued deliveries until next start", len(abandoned))
