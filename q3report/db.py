from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import asyncpg

from q3report.matchlog.models import (
    DELIVERED,
    PARSED,
    PENDING,
    FileIdentity,
    Outcome,
    OutcomeState,
    failed,
)

logger = logging.getLogger("q3report.db")


class StoreError(RuntimeError):
    """The record store could not persist an update. Fatal: idempotence is no longer guaranteed."""


# -----------------------------
# Schema
# -----------------------------
_CREATE_FILE_RECORDS_TABLE = """
CREATE TABLE IF NOT EXISTS file_records (
  path TEXT NOT NULL,
  fingerprint TEXT NOT NULL,
  state TEXT NOT NULL,
  reason TEXT NOT NULL DEFAULT '',
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (path, fingerprint)
);
"""
_CREATE_STATE_IDX = "CREATE INDEX IF NOT EXISTS file_records_state_idx ON file_records (state);"

# Terminal rows are never rewritten, even by a second process racing on the same file.
_UPSERT_RECORD = """
INSERT INTO file_records (path, fingerprint, state, reason)
VALUES ($1, $2, $3, $4)
ON CONFLICT (path, fingerprint) DO UPDATE SET
  state = EXCLUDED.state,
  reason = EXCLUDED.reason,
  updated_at = now()
WHERE file_records.state NOT IN ('delivered', 'failed');
"""


def _identity_from_row(path: str, fingerprint: str) -> FileIdentity:
    size, mtime_ns = fingerprint.split(":", 1)
    return FileIdentity(path=path, size=int(size), mtime_ns=int(mtime_ns))


class FileRecordStore(ABC):
    """Durable FileIdentity -> Outcome map.

    All updates to one identity go through a per-key lock, and every update is
    checked against the monotonic transition rules in Outcome.allows().
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, identity: FileIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity.key] = lock
        return lock

    def _release(self, identity: FileIdentity, outcome: Outcome) -> None:
        # Terminal records are never rewritten, so a later caller that creates
        # a fresh lock for the same key can only read.
        lock = self._locks.get(identity.key)
        if outcome.is_terminal and lock is not None and not lock.locked():
            del self._locks[identity.key]

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _read(self, identity: FileIdentity) -> Optional[Outcome]: ...

    @abstractmethod
    async def _write(self, identity: FileIdentity, outcome: Outcome) -> None: ...

    @abstractmethod
    async def outcomes(self) -> Dict[FileIdentity, Outcome]: ...

    async def get(self, identity: FileIdentity) -> Optional[Outcome]:
        return await self._read(identity)

    async def ensure_pending(self, identity: FileIdentity) -> Outcome:
        """Insert a new identity as pending; existing records are returned untouched."""
        async with self._lock(identity):
            current = await self._read(identity)
            if current is None:
                await self._write(identity, PENDING)
                logger.debug("Recorded %s as pending", identity.path)
                current = PENDING
        self._release(identity, current)
        return current

    async def transition(self, identity: FileIdentity, nxt: Outcome) -> Outcome:
        outcome = await self._transition(identity, nxt)
        self._release(identity, outcome)
        return outcome

    async def _transition(self, identity: FileIdentity, nxt: Outcome) -> Outcome:
        async with self._lock(identity):
            current = await self._read(identity)
            if current is not None and not current.allows(nxt):
                if current != nxt:
                    logger.debug(
                        "Ignoring %s -> %s for %s", current.state.value, nxt.state.value, identity.path
                    )
                return current
            await self._write(identity, nxt)
            logger.info("%s -> %s", identity.path, nxt.state.value)
            return nxt

    async def mark_parsed(self, identity: FileIdentity) -> Outcome:
        return await self.transition(identity, PARSED)

    async def mark_delivered(self, identity: FileIdentity) -> Outcome:
        return await self.transition(identity, DELIVERED)

    async def mark_failed(self, identity: FileIdentity, reason: str) -> Outcome:
        return await self.transition(identity, failed(reason))


class MemoryRecordStore(FileRecordStore):
    def __init__(self) -> None:
        super().__init__()
        self._records: Dict[str, Outcome] = {}

    async def _read(self, identity: FileIdentity) -> Optional[Outcome]:
        return self._records.get(identity.key)

    async def _write(self, identity: FileIdentity, outcome: Outcome) -> None:
        self._records[identity.key] = outcome

    async def outcomes(self) -> Dict[FileIdentity, Outcome]:
        return {FileIdentity.from_key(k): v for k, v in self._records.items()}


class JsonRecordStore(FileRecordStore):
    """State file rewritten atomically (temp file, fsync, rename) on every update."""

    VERSION = 1

    def __init__(self, path: str | os.PathLike) -> None:
        super().__init__()
        self._path = Path(path)
        self._records: Dict[str, Dict[str, str]] = {}
        self._file_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def start(self) -> None:
        if not self._path.exists():
            logger.info("No state file at %s; starting empty", self._path)
            return
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            # Starting empty here would re-deliver every report.
            raise StoreError(f"cannot load state file {self._path}: {e}") from e

        records = raw.get("records") if isinstance(raw, dict) else None
        if not isinstance(records, dict):
            raise StoreError(f"state file {self._path} has no 'records' table")
        self._records = {str(k): dict(v) for k, v in records.items() if isinstance(v, dict)}
        logger.info("Loaded %d file record(s) from %s", len(self._records), self._path)

    async def _read(self, identity: FileIdentity) -> Optional[Outcome]:
        row = self._records.get(identity.key)
        if row is None:
            return None
        return Outcome(OutcomeState(row["state"]), row.get("reason", ""))

    async def _write(self, identity: FileIdentity, outcome: Outcome) -> None:
        async with self._file_lock:
            previous = self._records.get(identity.key)
            self._records[identity.key] = {
                "state": outcome.state.value,
                "reason": outcome.reason,
                "updated_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            }
            payload = json.dumps(
                {"version": self.VERSION, "records": self._records}, indent=1, sort_keys=True
            )
            try:
                await asyncio.to_thread(self._flush, payload)
            except OSError as e:
                if previous is None:
                    self._records.pop(identity.key, None)
                else:
                    self._records[identity.key] = previous
                raise StoreError(f"cannot write state file {self._path}: {e}") from e

    def _flush(self, payload: str) -> None:
        """Blocking write; runs in a worker thread so the event loop keeps polling."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self._path)
        # The rename is only durable once the directory entry is on disk.
        if hasattr(os, "O_DIRECTORY"):
            fd = os.open(self._path.parent, os.O_RDONLY | os.O_DIRECTORY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)

    async def outcomes(self) -> Dict[FileIdentity, Outcome]:
        return {
            FileIdentity.from_key(k): Outcome(OutcomeState(v["state"]), v.get("reason", ""))
            for k, v in self._records.items()
        }


class PgRecordStore(FileRecordStore):
    def __init__(self, dsn: str) -> None:
        super().__init__()
        self._dsn = (dsn or "").strip()
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> Optional[asyncpg.Pool]:
        return self._pool

    async def start(self) -> None:
        try:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=5)
            async with self._pool.acquire() as conn:
                await conn.execute(_CREATE_FILE_RECORDS_TABLE)
                await conn.execute(_CREATE_STATE_IDX)
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreError(f"cannot open record database: {e}") from e

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise StoreError("DB not started")
        return self._pool

    async def _read(self, identity: FileIdentity) -> Optional[Outcome]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    "SELECT state, reason FROM file_records WHERE path = $1 AND fingerprint = $2;",
                    identity.path,
                    identity.fingerprint,
                )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreError(f"cannot read record for {identity.path}: {e}") from e
        if row is None:
            return None
        return Outcome(OutcomeState(str(row["state"])), str(row["reason"] or ""))

    async def _write(self, identity: FileIdentity, outcome: Outcome) -> None:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    _UPSERT_RECORD,
                    identity.path,
                    identity.fingerprint,
                    outcome.state.value,
                    outcome.reason,
                )
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreError(f"cannot write record for {identity.path}: {e}") from e

    async def outcomes(self) -> Dict[FileIdentity, Outcome]:
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch("SELECT path, fingerprint, state, reason FROM file_records;")
        except (OSError, asyncpg.PostgresError) as e:
            raise StoreError(f"cannot list file records: {e}") from e
        return {
            _identity_from_row(str(r["path"]), str(r["fingerprint"])): Outcome(
                OutcomeState(str(r["state"])), str(r["reason"] or "")
            )
            for r in rows
        }


def open_store(*, database_url: str = "", state_file: str = "") -> FileRecordStore:
    """Postgres when DATABASE_URL is set, else the JSON state file, else memory only."""
    if (database_url or "").strip():
        return PgRecordStore(database_url)
    if (state_file or "").strip():
        return JsonRecordStore(state_file)
    logger.warning("No DATABASE_URL or STATE_FILE configured; processed files are not remembered")
    return MemoryRecordStore()
