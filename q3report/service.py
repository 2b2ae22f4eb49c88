from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional

from q3report.clock import Clock, SystemClock
from q3report.config import Settings
from q3report.db import FileRecordStore, StoreError
from q3report.delivery import DeliveryQueue
from q3report.matchlog.models import FileIdentity, OutcomeState
from q3report.matchlog.parser import Malformed, parse_match_log
from q3report.matchlog.stats import build_report
from q3report.report import format_report
from q3report.telegram_bot import Sender
from q3report.watcher import DirectoryWatcher, identity_of

logger = logging.getLogger("q3report.service")


class ReportService:
    """Watcher -> bounded queue -> workers (parse, aggregate, format) -> delivery queue."""

    def __init__(
        self,
        *,
        store: FileRecordStore,
        watcher: DirectoryWatcher,
        delivery: DeliveryQueue,
        workers: int = 2,
        queue_size: int = 64,
        shutdown_grace_seconds: float = 5.0,
        max_read_attempts: int = 5,
    ) -> None:
        self._store = store
        self._watcher = watcher
        self._delivery = delivery
        self._workers = max(1, int(workers))
        self._queue_size = max(1, int(queue_size))
        self._grace = max(0.0, float(shutdown_grace_seconds))
        self._max_read_attempts = max(1, int(max_read_attempts))
        self._read_failures: Dict[FileIdentity, int] = {}

        self.parsed = 0
        self.malformed = 0

    @property
    def watcher(self) -> DirectoryWatcher:
        return self._watcher

    @property
    def delivery(self) -> DeliveryQueue:
        return self._delivery

    async def recover(self) -> int:
        """Fail records left unfinished by a previous run whose file is gone or rewritten.

        Unfinished records whose file is unchanged need nothing: the watcher
        finds them again. Returns the number of records retried.
        """
        retried = 0
        for identity, outcome in sorted((await self._store.outcomes()).items(), key=lambda kv: kv[0].key):
            if outcome.is_terminal:
                continue
            try:
                current = identity_of(Path(identity.path))
            except FileNotFoundError:
                current = None
            if current != identity:
                await self._store.mark_failed(identity, "log file missing or rewritten before delivery")
                continue
            retried += 1
        if retried:
            logger.info("%d unfinished log(s) from a previous run will be retried", retried)
        return retried

    async def _read_failed(self, identity: FileIdentity, err: OSError) -> None:
        failures = self._read_failures.get(identity, 0) + 1
        if failures >= self._max_read_attempts:
            self._read_failures.pop(identity, None)
            await self._store.mark_failed(identity, f"unreadable after {failures} attempt(s): {err}")
            logger.error("Giving up on %s: %s", identity.path, err)
            return
        self._read_failures[identity] = failures
        delay = self._watcher.retry_delay(failures)
        logger.warning("Cannot read %s: %s; retrying in %.1fs", identity.path, err, delay)
        self._watcher.forget(identity, retry_in=delay)

    async def process_file(self, identity: FileIdentity) -> bool:
        """Run one complete file through the pipeline. Returns True if a report was queued."""
        outcome = await self._store.get(identity)
        if outcome is not None and outcome.is_terminal:
            self._read_failures.pop(identity, None)
            return False

        path = Path(identity.path)
        try:
            current = identity_of(path)
            data = path.read_bytes() if current == identity else b""
        except FileNotFoundError:
            self._read_failures.pop(identity, None)
            await self._store.mark_failed(identity, "log file disappeared before it was read")
            logger.warning("%s disappeared before it was read", path)
            return False
        except OSError as e:
            await self._read_failed(identity, e)
            return False
        self._read_failures.pop(identity, None)

        if current != identity or len(data) != identity.size:
            # The watcher picks up the new version once it settles.
            await self._store.mark_failed(identity, "superseded by a newer version of the file")
            logger.info("%s changed after it looked complete; waiting for it to settle", path)
            return False

        try:
            log = parse_match_log(data, source=path.name)
        except Malformed as e:
            self.malformed += 1
            await self._store.mark_failed(identity, f"malformed log: {e}")
            logger.error("Not a match log, giving up on %s: %s", path, e)
            return False

        text = format_report(build_report(log))
        outcome = await self._store.mark_parsed(identity)
        if outcome.state != OutcomeState.PARSED:
            return False
        self.parsed += 1
        self._delivery.submit(identity, text)
        return True

    async def _worker(self, queue: "asyncio.Queue[FileIdentity]", stop: asyncio.Event) -> None:
        while not stop.is_set():
            getter = asyncio.ensure_future(queue.get())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            stopper.cancel()
            if getter not in done:
                getter.cancel()
                break

            identity = getter.result()
            try:
                await self.process_file(identity)
            except StoreError:
                raise
            except Exception as e:
                logger.exception("Unexpected error processing %s", identity.path)
                await self._store.mark_failed(identity, f"internal error: {e.__class__.__name__}: {e}")
            finally:
                queue.task_done()

    async def run(self, stop: asyncio.Event) -> None:
        """Run until `stop` is set. Raises StoreError (and other fatal errors) after shutting down."""
        self._watcher.check_folder()
        await self.recover()

        queue: "asyncio.Queue[FileIdentity]" = asyncio.Queue(maxsize=self._queue_size)
        watcher_task = asyncio.create_task(self._watcher.run(queue, stop))
        worker_tasks = [asyncio.create_task(self._worker(queue, stop)) for _ in range(self._workers)]
        delivery_task = asyncio.create_task(self._delivery.run(stop))
        stop_waiter = asyncio.create_task(stop.wait())

        failure: Optional[BaseException] = None
        try:
            done, _ = await asyncio.wait(
                [stop_waiter, watcher_task, delivery_task, *worker_tasks],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for t in done:
                if t is not stop_waiter and not t.cancelled() and t.exception() is not None:
                    failure = t.exception()
                    logger.critical("Stopping: %s", failure)
        finally:
            stop.set()
            stop_waiter.cancel()
            failure = await self._shutdown(watcher_task, worker_tasks, delivery_task, failure)

        logger.info(
            "Stopped: %d parsed, %d malformed, %d delivered, %d failed, %d abandoned",
            self.parsed,
            self.malformed,
            self._delivery.delivered,
            self._delivery.failed,
            queue.qsize() + len(self._delivery),
        )
        if failure is not None:
            raise failure

    async def _shutdown(
        self,
        watcher_task: asyncio.Task,
        worker_tasks: List[asyncio.Task],
        delivery_task: asyncio.Task,
        failure: Optional[BaseException],
    ) -> Optional[BaseException]:
        # The watcher may be blocked on a full queue; it holds no work worth keeping.
        if not watcher_task.done():
            await asyncio.wait({watcher_task}, timeout=self._grace)
            if not watcher_task.done():
                watcher_task.cancel()

        results = await asyncio.gather(watcher_task, *worker_tasks, delivery_task, return_exceptions=True)
        for r in results:
            if isinstance(r, asyncio.CancelledError):
                continue
            if isinstance(r, BaseException) and failure is None:
                failure = r
        return failure


def build_service(
    settings: Settings,
    *,
    store: FileRecordStore,
    sender: Sender,
    clock: Optional[Clock] = None,
) -> ReportService:
    clock = clock or SystemClock()
    watcher = DirectoryWatcher(
        settings.watch_folder,
        store,
        pattern=settings.file_pattern,
        quiescence_seconds=settings.quiescence_seconds,
        poll_interval_seconds=settings.poll_interval_seconds,
        max_backoff_seconds=settings.watch_max_backoff_seconds,
        clock=clock,
    )
    delivery = DeliveryQueue(
        sender,
        store,
        settings.telegram_chat_id,
        max_attempts=settings.delivery_max_attempts,
        base_backoff_seconds=settings.delivery_backoff_seconds,
        max_backoff_seconds=settings.delivery_max_backoff_seconds,
        attempt_timeout_seconds=settings.delivery_timeout_seconds,
        concurrency=settings.delivery_concurrency,
        clock=clock,
    )
    return ReportService(
        store=store,
        watcher=watcher,
        delivery=delivery,
        workers=settings.workers,
        queue_size=settings.queue_size,
        max_read_attempts=settings.read_max_attempts,
    )
