from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from q3report.telegram_bot import SendError

DATA_DIR = Path(__file__).parent / "data"


class ManualClock:
    """Clock that only moves when told to; sleeping advances it instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += max(0.0, seconds)
        await asyncio.sleep(0)


class RecordingSender:
    """Fails the first `failures` calls, then records every message it is given."""

    def __init__(self, failures: int = 0, *, retryable: bool = True, stop: Optional[asyncio.Event] = None) -> None:
        self.failures = failures
        self.retryable = retryable
        self.stop = stop
        self.calls = 0
        self.sent: List[Tuple[str, str]] = []

    async def send(self, destination_id: str, text: str) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise SendError(f"boom #{self.calls}", retryable=self.retryable)
        self.sent.append((destination_id, text))
        if self.stop is not None:
            self.stop.set()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def make_sender():
    return RecordingSender


@pytest.fixture
def data_dir() -> Path:
    return DATA_DIR


def read_sample(name: str) -> bytes:
    return (DATA_DIR / name).read_bytes()


@pytest.fixture
def sample():
    return read_sample
