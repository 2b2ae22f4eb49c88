from __future__ import annotations

import asyncio
import shutil
from dataclasses import replace
from pathlib import Path

import pytest

from q3report.config import Settings
from q3report.db import JsonRecordStore, MemoryRecordStore, StoreError
from q3report.matchlog.models import FileIdentity, OutcomeState
from q3report.service import build_service
from q3report.watcher import identity_of


def _settings(folder: Path) -> Settings:
    return replace(
        Settings.from_env(),
        watch_folder=str(folder),
        file_pattern="*.xml",
        telegram_chat_id="-100123",
        quiescence_seconds=1.0,
        poll_interval_seconds=1.0,
        workers=1,
    )


def _drop_log(folder: Path, data_dir: Path, name: str = "tdm.xml") -> Path:
    folder.mkdir(parents=True, exist_ok=True)
    return Path(shutil.copy(data_dir / name, folder / name))


def test_end_to_end_delivers_one_report(tmp_path: Path, data_dir: Path, clock, make_sender) -> None:
    log = _drop_log(tmp_path / "stats", data_dir)

    async def go():
        stop = asyncio.Event()
        sender = make_sender(stop=stop)
        store = MemoryRecordStore()
        service = build_service(_settings(tmp_path / "stats"), store=store, sender=sender, clock=clock)
        await service.run(stop)
        return sender, await store.get(identity_of(log)), service

    sender, outcome, service = asyncio.run(go())

    assert outcome.state == OutcomeState.DELIVERED
    assert len(sender.sent) == 1
    chat, text = sender.sent[0]
    assert chat == "-100123"
    assert text.startswith("Match concluded\nMap: q3dm6 | Mode: TDM | Duration: 10:00\n")
    assert " 1  Player1     10       2   83.3%" in text
    assert service.parsed == 1


def test_restart_does_not_resend(tmp_path: Path, data_dir: Path, clock, make_sender) -> None:
    folder = tmp_path / "stats"
    _drop_log(folder, data_dir)
    state = tmp_path / "state.json"

    async def first_run():
        stop = asyncio.Event()
        store = JsonRecordStore(state)
        await store.start()
        sender = make_sender(stop=stop)
        await build_service(_settings(folder), store=store, sender=sender, clock=clock).run(stop)
        return sender

    async def second_run():
        store = JsonRecordStore(state)
        await store.start()
        sender = make_sender()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        await service.recover()
        emitted = []
        for _ in range(3):
            emitted += await service.watcher.scan_once()
            clock.advance(1.0)
        return sender, emitted

    first = asyncio.run(first_run())
    second, emitted = asyncio.run(second_run())

    assert len(first.sent) == 1
    assert emitted == []
    assert second.calls == 0


def test_parsed_but_unsent_report_is_delivered_after_restart(
    tmp_path: Path, data_dir: Path, clock, sender
) -> None:
    folder = tmp_path / "stats"
    log = _drop_log(folder, data_dir)
    state = tmp_path / "state.json"

    async def interrupted_run():
        store = JsonRecordStore(state)
        await store.start()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        ident = identity_of(log)
        await store.ensure_pending(ident)
        assert await service.process_file(ident)
        # Shut down before the delivery queue ever ran.
        return await store.get(ident)

    async def next_run():
        store = JsonRecordStore(state)
        await store.start()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        retried = await service.recover()
        emitted = []
        for _ in range(2):
            emitted += await service.watcher.scan_once()
            clock.advance(1.0)
        for ident in emitted:
            await service.process_file(ident)
        await service.delivery.run(asyncio.Event(), until_idle=True)
        return retried, emitted, await store.get(identity_of(log))

    assert asyncio.run(interrupted_run()).state == OutcomeState.PARSED
    retried, emitted, outcome = asyncio.run(next_run())

    assert retried == 1
    assert emitted == [identity_of(log)]
    assert outcome.state == OutcomeState.DELIVERED
    assert len(sender.sent) == 1


def test_malformed_log_fails_without_retry(tmp_path: Path, clock, sender) -> None:
    folder = tmp_path / "stats"
    folder.mkdir()
    bad = folder / "garbage.xml"
    bad.write_bytes(b"\x00\x01 definitely not xml")

    async def go():
        store = MemoryRecordStore()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        ident = identity_of(bad)
        await store.ensure_pending(ident)
        queued = await service.process_file(ident)
        again = await service.process_file(ident)
        return queued, again, await store.get(ident), service

    queued, again, outcome, service = asyncio.run(go())

    assert (queued, again) == (False, False)
    assert outcome.state == OutcomeState.FAILED
    assert outcome.reason.startswith("malformed log: garbage.xml: no <match> element found")
    assert service.malformed == 1
    assert len(service.delivery) == 0
    assert sender.calls == 0


def test_rewritten_file_supersedes_old_identity(tmp_path: Path, data_dir: Path, clock, sender) -> None:
    folder = tmp_path / "stats"
    log = _drop_log(folder, data_dir)
    stale = FileIdentity(path=str(log), size=identity_of(log).size - 1, mtime_ns=1)

    async def go():
        store = MemoryRecordStore()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        await store.ensure_pending(stale)
        await service.process_file(stale)
        return await store.get(stale)

    outcome = asyncio.run(go())
    assert outcome.state == OutcomeState.FAILED
    assert outcome.reason == "superseded by a newer version of the file"


def test_unreadable_log_backs_off_then_fails(
    tmp_path: Path, data_dir: Path, clock, sender, monkeypatch
) -> None:
    folder = tmp_path / "stats"
    log = _drop_log(folder, data_dir)
    real_read = Path.read_bytes

    def read_bytes(self):
        if self.name == log.name:
            raise PermissionError(13, "Permission denied", str(self))
        return real_read(self)

    monkeypatch.setattr(Path, "read_bytes", read_bytes)

    async def go():
        store = MemoryRecordStore()
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        watcher = service.watcher
        await watcher.scan_once()
        clock.advance(1.0)
        (ident,) = await watcher.scan_once()
        await service.process_file(ident)
        held = await watcher.scan_once()
        first = await store.get(ident)
        clock.advance(watcher.retry_delay(1))
        released = await watcher.scan_once()
        for _ in range(4):
            await service.process_file(ident)
        return ident, held, first, released, await store.get(ident)

    ident, held, first, released, outcome = asyncio.run(go())

    assert held == []
    assert first.state == OutcomeState.PENDING
    assert released == [ident]
    assert outcome.state == OutcomeState.FAILED
    assert outcome.reason.startswith("unreadable after 5 attempt(s): ")
    assert sender.calls == 0


def test_short_read_marks_identity_superseded(
    tmp_path: Path, data_dir: Path, clock, sender, monkeypatch
) -> None:
    log = _drop_log(tmp_path / "stats", data_dir)
    real_read = Path.read_bytes
    monkeypatch.setattr(Path, "read_bytes", lambda self: real_read(self)[:-10])

    async def go():
        store = MemoryRecordStore()
        service = build_service(_settings(tmp_path / "stats"), store=store, sender=sender, clock=clock)
        ident = identity_of(log)
        await store.ensure_pending(ident)
        queued = await service.process_file(ident)
        return queued, await store.get(ident), service

    queued, outcome, service = asyncio.run(go())

    assert queued is False
    assert outcome.state == OutcomeState.FAILED
    assert outcome.reason == "superseded by a newer version of the file"
    assert service.parsed == 0


def test_recover_fails_records_for_missing_files(tmp_path: Path, clock, sender) -> None:
    folder = tmp_path / "stats"
    folder.mkdir()
    gone = FileIdentity(path=str(folder / "rotated.xml"), size=10, mtime_ns=1)

    async def go():
        store = MemoryRecordStore()
        await store.ensure_pending(gone)
        service = build_service(_settings(folder), store=store, sender=sender, clock=clock)
        retried = await service.recover()
        return retried, await store.get(gone)

    retried, outcome = asyncio.run(go())
    assert retried == 0
    assert outcome.state == OutcomeState.FAILED


def test_missing_folder_fails_at_startup(tmp_path: Path, clock, sender) -> None:
    service = build_service(_settings(tmp_path / "nope"), store=MemoryRecordStore(), sender=sender, clock=clock)

    with pytest.raises(FileNotFoundError):
        asyncio.run(service.run(asyncio.Event()))


def test_store_failure_stops_the_service(tmp_path: Path, data_dir: Path, clock, sender) -> None:
    class BrokenStore(MemoryRecordStore):
        async def mark_parsed(self, identity):
            raise StoreError("disk full")

    _drop_log(tmp_path / "stats", data_dir)

    async def go():
        service = build_service(_settings(tmp_path / "stats"), store=BrokenStore(), sender=sender, clock=clock)
        await service.run(asyncio.Event())

    with pytest.raises(StoreError, match="disk full"):
        asyncio.run(go())
    assert sender.calls == 0
