from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from q3report.matchlog.models import (
    EventKind,
    MatchLog,
    MatchReport,
    PlayerEntry,
    PlayerStat,
    TeamStat,
    accuracy_percent,
)

# Frags in a row without dying before a streak is worth mentioning.
STREAK_THRESHOLD = 5


def efficiency(frags: int, deaths: int) -> float:
    return frags / max(1, frags + deaths)


def rank_key(frags: int, deaths: int, name: str, player_id: str = "") -> Tuple[int, int, str, str]:
    """Frags desc, deaths asc, name asc. The player id only splits identical names."""
    return (-frags, deaths, name, player_id)


def match_duration(log: MatchLog) -> Optional[float]:
    """Explicit end marker, then the declared duration, then the event span."""
    if log.end_time is not None and log.end_time >= log.start_time:
        return log.end_time - log.start_time
    if log.declared_duration is not None:
        return log.declared_duration
    if log.events:
        return log.events[-1].time - log.events[0].time
    return None


def _tally(log: MatchLog) -> Tuple[Counter, Counter, Dict[str, List[str]], Dict[str, str]]:
    frags: Counter = Counter()
    deaths: Counter = Counter()
    award_counts: Dict[str, Counter] = {}
    best_streak: Counter = Counter()
    streak: Counter = Counter()
    final_team: Dict[str, str] = {}

    for ev in log.events:
        if ev.kind == EventKind.FRAG:
            if ev.actor and ev.actor != ev.target:
                frags[ev.actor] += 1
                streak[ev.actor] += 1
                best_streak[ev.actor] = max(best_streak[ev.actor], streak[ev.actor])
            deaths[ev.target] += 1
            streak[ev.target] = 0
        elif ev.kind == EventKind.DEATH:
            deaths[ev.actor] += 1
            streak[ev.actor] = 0
        elif ev.kind == EventKind.AWARD:
            award_counts.setdefault(ev.actor, Counter())[ev.detail] += 1
        elif ev.kind == EventKind.TEAM_CHANGE and ev.detail:
            final_team[ev.actor] = ev.detail

    awards: Dict[str, List[str]] = {}
    for name, counts in award_counts.items():
        awards[name] = [a if n == 1 else f"{a} x{n}" for a, n in sorted(counts.items())]
    for name, n in best_streak.items():
        if n >= STREAK_THRESHOLD:
            awards.setdefault(name, []).append(f"Streak {n}")

    return frags, deaths, awards, final_team


def _player_stat(
    p: PlayerEntry, frags: int, deaths: int, awards: List[str], team: str
) -> PlayerStat:
    return PlayerStat(
        rank=0,
        name=p.name,
        team=team,
        frags=frags,
        deaths=deaths,
        efficiency=efficiency(frags, deaths),
        accuracy=accuracy_percent(p.hits, p.shots),
        awards=tuple(awards),
        weapons=p.weapons,
        stats=p.stats,
        pickups=p.pickups,
    )


def build_report(log: MatchLog, *, generated_at: Optional[datetime] = None) -> MatchReport:
    """Derive the ranked MatchReport for one match. Pure apart from the default timestamp."""
    ev_frags, ev_deaths, awards, final_team = _tally(log)

    rows: List[Tuple[Tuple[int, int, str, str], PlayerStat]] = []
    for p in log.players:
        # Truncated event streams undercount; the summary counters are the floor.
        frags = max(ev_frags.get(p.name, 0), p.kills)
        deaths = max(ev_deaths.get(p.name, 0), p.deaths)
        team = final_team.get(p.name, p.team)
        stat = _player_stat(p, frags, deaths, awards.get(p.name, []), team)
        rows.append((rank_key(frags, deaths, p.name, p.player_id), stat))

    rows.sort(key=lambda r: r[0])
    ranked = tuple(replace(s, rank=i + 1) for i, (_, s) in enumerate(rows))

    teams: List[TeamStat] = []
    if log.is_team_game:
        for t in log.teams:
            members = [s for s in ranked if s.team == t.name]
            teams.append(
                TeamStat(
                    name=t.name,
                    score=t.score,
                    frags=sum(s.frags for s in members),
                    deaths=sum(s.deaths for s in members),
                )
            )
        teams.sort(key=lambda t: (-t.score, t.name))

    return MatchReport(
        map_name=log.map_name,
        game_type=log.game_type,
        duration=match_duration(log),
        is_team_game=log.is_team_game,
        players=ranked,
        teams=tuple(teams),
        warnings=log.warnings,
        generated_at=generated_at or datetime.now(timezone.utc),
    )
