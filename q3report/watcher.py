from __future__ import annotations

import asyncio
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from q3report.clock import Clock, SystemClock, sleep_or_stop
from q3report.db import FileRecordStore
from q3report.matchlog.models import FileIdentity

logger = logging.getLogger("q3report.watcher")


@dataclass(frozen=True)
class _Observation:
    size: int
    mtime_ns: int
    since: float  # clock time the current size/mtime was first seen


def identity_of(path: Path) -> FileIdentity:
    st = path.stat()
    return FileIdentity(path=str(path), size=int(st.st_size), mtime_ns=int(st.st_mtime_ns))


class DirectoryWatcher:
    """Polls a folder and emits files whose size and mtime have stopped changing.

    A file is complete once the same (size, mtime) has been observed across
    polls spanning at least `quiescence_seconds`. Identities already delivered
    or permanently failed are skipped; new ones are recorded as pending.
    """

    def __init__(
        self,
        folder: str | os.PathLike,
        store: FileRecordStore,
        *,
        pattern: str = "*.xml",
        quiescence_seconds: float = 3.0,
        poll_interval_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        clock: Optional[Clock] = None,
    ) -> None:
        self._folder = Path(folder)
        self._store = store
        self._pattern = pattern or "*"
        self._quiescence = max(0.0, float(quiescence_seconds))
        self._poll_interval = max(0.01, float(poll_interval_seconds))
        self._max_backoff = max(self._poll_interval, float(max_backoff_seconds))
        self._clock = clock or SystemClock()

        # All keyed by path, so state is bounded by the files currently present.
        self._seen: Dict[str, _Observation] = {}
        self._emitted: Dict[str, FileIdentity] = {}
        self._done: Dict[str, FileIdentity] = {}
        self._hold_until: Dict[str, float] = {}
        self._unreadable: Set[str] = set()
        self._failures = 0

    @property
    def folder(self) -> Path:
        return self._folder

    def check_folder(self) -> None:
        """Startup check: a folder that does not exist at all is fatal."""
        if not self._folder.is_dir():
            raise FileNotFoundError(f"watch folder does not exist: {self._folder}")

    def forget(self, identity: FileIdentity, *, retry_in: float = 0.0) -> None:
        """Allow an emitted identity to be emitted again, no sooner than `retry_in` seconds from now."""
        if self._emitted.get(identity.path) == identity:
            del self._emitted[identity.path]
        if retry_in > 0:
            self._hold_until[identity.path] = self._clock.now() + retry_in

    def retry_delay(self, failures: int) -> float:
        """Backoff before re-emitting a file after `failures` consecutive read failures."""
        return min(self._max_backoff, self._poll_interval * (2 ** min(max(0, failures), 16)))

    def _list(self) -> List[Tuple[str, int, int]]:
        out: List[Tuple[str, int, int]] = []
        listed: Set[str] = set()
        # Only the directory listing itself may raise; one bad file must not hide the others.
        for p in sorted(self._folder.glob(self._pattern)):
            path = str(p)
            listed.add(path)
            try:
                st = p.stat()
            except FileNotFoundError:
                # Rotated away between listing and stat.
                continue
            except OSError as e:
                if path not in self._unreadable:
                    self._unreadable.add(path)
                    logger.warning("Cannot stat %s: %s; skipping it", path, e)
                continue
            if path in self._unreadable:
                self._unreadable.discard(path)
                logger.info("%s readable again", path)
            if not stat.S_ISREG(st.st_mode):
                continue
            out.append((path, int(st.st_size), int(st.st_mtime_ns)))
        self._unreadable &= listed
        return out

    def _drop(self, path: str) -> None:
        self._seen.pop(path, None)
        self._emitted.pop(path, None)
        self._done.pop(path, None)
        self._hold_until.pop(path, None)

    async def scan_once(self) -> List[FileIdentity]:
        """One poll. Returns newly stable identities in detection order.

        Raises OSError when the folder cannot be listed.
        """
        if not self._folder.is_dir():
            raise FileNotFoundError(f"watch folder unavailable: {self._folder}")

        now = self._clock.now()
        listing = self._list()
        present = {path for path, _, _ in listing}
        for gone in [p for p in self._seen if p not in present]:
            self._drop(gone)

        stable: List[Tuple[float, FileIdentity]] = []
        for path, size, mtime_ns in listing:
            obs = self._seen.get(path)
            if obs is None or obs.size != size or obs.mtime_ns != mtime_ns:
                if obs is not None:
                    # A new version replaces whatever was tracked for the old one.
                    self._drop(path)
                self._seen[path] = _Observation(size, mtime_ns, now)
                continue
            if now - obs.since < self._quiescence:
                continue
            if now < self._hold_until.get(path, now):
                continue

            identity = FileIdentity(path=path, size=size, mtime_ns=mtime_ns)
            if self._emitted.get(path) == identity or self._done.get(path) == identity:
                continue

            outcome = await self._store.ensure_pending(identity)
            if outcome.is_terminal:
                self._done[path] = identity
                logger.debug("Skipping %s (%s)", path, outcome.state.value)
                continue
            self._hold_until.pop(path, None)
            stable.append((obs.since, identity))

        stable.sort(key=lambda s: s[0])
        emitted = [identity for _, identity in stable]
        for identity in emitted:
            self._emitted[identity.path] = identity
            logger.info("Log complete: %s (%d bytes)", identity.path, identity.size)
        return emitted

    def _backoff(self) -> float:
        return self.retry_delay(self._failures)

    async def run(self, queue: "asyncio.Queue[FileIdentity]", stop: asyncio.Event) -> None:
        """Poll until `stop` is set, putting complete files on `queue` (blocks when full)."""
        logger.info("Watching %s for %s", self._folder, self._pattern)
        while not stop.is_set():
            delay = self._poll_interval
            try:
                for identity in await self.scan_once():
                    await queue.put(identity)
                if self._failures:
                    logger.info("Watch folder %s readable again", self._folder)
                self._failures = 0
            except OSError as e:
                self._failures += 1
                delay = self._backoff()
                logger.warning(
                    "Cannot scan %s (attempt %d): %s; retrying in %.1fs",
                    self._folder,
                    self._failures,
                    e,
                    delay,
                )
            await sleep_or_stop(self._clock, delay, stop)
        logger.info("Watcher stopped")

