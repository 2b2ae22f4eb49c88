from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class FileIdentity:
    path: str
    size: int
    mtime_ns: int

    @property
    def fingerprint(self) -> str:
        return f"{self.size}:{self.mtime_ns}"

    @property
    def key(self) -> str:
        return f"{self.path}|{self.size}|{self.mtime_ns}"

    @staticmethod
    def from_key(key: str) -> "FileIdentity":
        path, size, mtime_ns = key.rsplit("|", 2)
        return FileIdentity(path=path, size=int(size), mtime_ns=int(mtime_ns))


class OutcomeState(str, Enum):
    PENDING = "pending"
    PARSED = "parsed"
    DELIVERED = "delivered"
    FAILED = "failed"  # PermanentlyFailed(reason)


_RANK = {
    OutcomeState.PENDING: 0,
    OutcomeState.PARSED: 1,
    OutcomeState.DELIVERED: 2,
}


@dataclass(frozen=True)
class Outcome:
    state: OutcomeState
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in (OutcomeState.DELIVERED, OutcomeState.FAILED)

    def allows(self, nxt: "Outcome") -> bool:
        """Monotonic transitions only; terminal states never change."""
        if self.is_terminal:
            return False
        if nxt.state == OutcomeState.FAILED:
            return True
        return _RANK[nxt.state] > _RANK[self.state]


PENDING = Outcome(OutcomeState.PENDING)
PARSED = Outcome(OutcomeState.PARSED)
DELIVERED = Outcome(OutcomeState.DELIVERED)


def failed(reason: str) -> Outcome:
    return Outcome(OutcomeState.FAILED, (reason or "").strip() or "unknown error")


# -----------------------------
# Parsed match log
# -----------------------------


@dataclass(frozen=True)
class WeaponStat:
    name: str
    hits: int = 0
    shots: int = 0
    kills: int = 0

    @property
    def accuracy(self) -> int:
        return accuracy_percent(self.hits, self.shots)


def accuracy_percent(hits: int, shots: int) -> int:
    if hits >= shots and hits > 0:
        return 100
    if shots > 0:
        return (hits * 100) // shots
    return 0


@dataclass(frozen=True)
class PlayerEntry:
    name: str
    player_id: str = ""
    team: str = ""
    kills: int = 0
    deaths: int = 0
    score: int = 0
    damage_given: int = 0
    damage_taken: int = 0
    hits: int = 0
    shots: int = 0
    pickups: Tuple[Tuple[str, int], ...] = ()
    weapons: Tuple[WeaponStat, ...] = ()
    extra_stats: Tuple[Tuple[str, str], ...] = ()
    # Every non-pickup <stat> in document order; known counters as parsed integers.
    stats: Tuple[Tuple[str, str], ...] = ()


class EventKind(str, Enum):
    FRAG = "frag"
    DEATH = "death"
    AWARD = "award"
    TEAM_CHANGE = "team_change"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    time: float
    actor: str  # attacker / player
    target: str = ""  # victim (frags only)
    detail: str = ""  # weapon, award name, cause or new team
    seq: int = 0  # document order


@dataclass(frozen=True)
class TeamEntry:
    name: str
    score: int = 0


@dataclass(frozen=True)
class MatchLog:
    map_name: str
    game_type: str
    is_team_game: bool = False
    start_time: float = 0.0
    end_time: Optional[float] = None  # explicit end marker
    declared_duration: Optional[float] = None  # <match duration="..">
    complete: bool = True
    teams: Tuple[TeamEntry, ...] = ()
    players: Tuple[PlayerEntry, ...] = ()
    events: Tuple[Event, ...] = ()
    warnings: Tuple[str, ...] = ()

    def player_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.players)


# -----------------------------
# Derived report
# -----------------------------


@dataclass(frozen=True)
class PlayerStat:
    rank: int
    name: str
    team: str
    frags: int
    deaths: int
    efficiency: float
    accuracy: int
    awards: Tuple[str, ...] = ()
    weapons: Tuple[WeaponStat, ...] = ()
    stats: Tuple[Tuple[str, str], ...] = ()
    pickups: Tuple[Tuple[str, int], ...] = ()


@dataclass(frozen=True)
class TeamStat:
    name: str
    score: int
    frags: int
    deaths: int


@dataclass(frozen=True)
class MatchReport:
    map_name: str
    game_type: str
    duration: Optional[float]
    is_team_game: bool
    players: Tuple[PlayerStat, ...]
    teams: Tuple[TeamStat, ...] = ()
    warnings: Tuple[str, ...] = ()
    generated_at: Optional[datetime] = field(default=None, compare=False)

    def by_name(self) -> Dict[str, PlayerStat]:
        return {p.name: p for p in self.players}
