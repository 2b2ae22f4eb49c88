from __future__ import annotations

import codecs
import logging
import xml.etree.ElementTree as ET
from xml.parsers import expat
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import regex as re

from q3report.matchlog.models import (
    Event,
    EventKind,
    MatchLog,
    PlayerEntry,
    TeamEntry,
    WeaponStat,
)

logger = logging.getLogger("q3report.parser")


class Malformed(ValueError):
    """Content is not recognisable as a match log; retrying will not help."""


# Item pickups are reported as <stat> entries by most mods. They are counted
# as pickups rather than echoed as player stats.
PICKUP_STATS = ("MH", "RA", "YA", "GA", "Quad", "Haste", "Blue Flag", "Red Flag")

_WORLD_NAMES = {"", "world", "<world>", "environment"}

_TEAM_LABELS = ("Team One", "Team Two")

_NO_ELEMENTS = expat.errors.codes[expat.errors.XML_ERROR_NO_ELEMENTS]


# -----------------
# Helpers
# -----------------

_RX_XML_DECL = re.compile(r"^\s*<\?xml[^>]*?\?>", re.I)
_RX_DECL_ENCODING = re.compile(r"""encoding\s*=\s*["'](?P<enc>[A-Za-z0-9._\-]+)["']""", re.I)
_RX_NUMBER = re.compile(
    r"^\s*(?P<num>[+-]?(?:\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:[.,]\d+)?))\s*%?\s*$"
)
# "2,300" and "1,234,567.5" use commas to group thousands; "45,5" is a decimal comma.
_RX_GROUPED = re.compile(r"^[+-]?[1-9]\d{0,2}(?:,\d{3})+(?:\.\d+)?$")
_RX_CLOCK = re.compile(r"^\s*(?:(?P<h>\d+):)?(?P<m>\d{1,3}):(?P<s>\d{1,2}(?:\.\d+)?)\s*$")


def _norm_key(s: str) -> str:
    """'Damage Given', 'damageGiven' and 'damage_given' all become 'damagegiven'."""
    return re.sub(r"[^a-z0-9]+", "", (s or "").lower())


_PICKUP_KEYS = {_norm_key(s) for s in PICKUP_STATS}

_COUNTER_STATS: Dict[str, str] = {
    "kills": "kills",
    "frags": "kills",
    "deaths": "deaths",
    "score": "score",
    "damagegiven": "damage_given",
    "dmggiven": "damage_given",
    "dg": "damage_given",
    "damagetaken": "damage_taken",
    "dmgtaken": "damage_taken",
    "dt": "damage_taken",
    "hits": "hits",
    "shots": "shots",
}

_EVENT_TAGS: Dict[str, EventKind] = {
    "frag": EventKind.FRAG,
    "kill": EventKind.FRAG,
    "death": EventKind.DEATH,
    "award": EventKind.AWARD,
    "teamchange": EventKind.TEAM_CHANGE,
}


def _pick(attrs: Dict[str, str], *names: str) -> Optional[str]:
    for n in names:
        v = attrs.get(n)
        if v is not None:
            return v.strip()
    return None


def _parse_number(s: Optional[str]) -> Optional[float]:
    m = _RX_NUMBER.match(s or "")
    if not m:
        return None
    num = m.group("num")
    if _RX_GROUPED.match(num):
        return float(num.replace(",", ""))
    return float(num.replace(",", "."))


def _parse_seconds(s: Optional[str]) -> Optional[float]:
    """Seconds ('12.5') or clock form ('10:00', '1:02:03')."""
    raw = (s or "").strip()
    if not raw:
        return None
    m = _RX_CLOCK.match(raw)
    if m:
        h = int(m.group("h") or 0)
        return h * 3600 + int(m.group("m")) * 60 + float(m.group("s"))
    return _parse_number(raw)


def _parse_bool(s: Optional[str]) -> Optional[bool]:
    raw = (s or "").strip().lower()
    if raw in {"1", "true", "yes", "y", "on"}:
        return True
    if raw in {"0", "false", "no", "n", "off"}:
        return False
    return None


def _decode(data: bytes) -> str:
    """Decode using the declared encoding (utf-8 by default) and drop the declaration."""
    head = data[:200].decode("ascii", errors="ignore")
    encoding = "utf-8"
    decl = _RX_XML_DECL.match(head)
    if decl:
        m = _RX_DECL_ENCODING.search(decl.group(0))
        if m:
            try:
                encoding = codecs.lookup(m.group("enc")).name
            except LookupError:
                encoding = "utf-8"
    text = data.decode(encoding, errors="replace")
    if text.startswith("\ufeff"):
        text = text[1:]
    return _RX_XML_DECL.sub("", text, count=1)


# -----------------
# Phase 1: loose field bags
# -----------------


@dataclass
class _PlayerBag:
    attrs: Dict[str, str]
    team_index: Optional[int]
    stats: List[Tuple[str, str]] = field(default_factory=list)
    items: List[Dict[str, str]] = field(default_factory=list)
    weapons: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class _MatchBag:
    attrs: Optional[Dict[str, str]] = None
    teams: List[Dict[str, str]] = field(default_factory=list)
    players: List[_PlayerBag] = field(default_factory=list)
    events: List[Tuple[str, Dict[str, str]]] = field(default_factory=list)
    start: Optional[Dict[str, str]] = None
    end: Optional[Dict[str, str]] = None
    complete: bool = False
    error: Optional[str] = None


def _attrs(el: ET.Element) -> Dict[str, str]:
    return {_norm_key(k): (v or "") for k, v in el.attrib.items()}


def _collect(text: str) -> _MatchBag:
    bag = _MatchBag()
    parser = ET.XMLPullParser(events=("start", "end"))

    stack: List[str] = []
    current_team: Optional[int] = None
    current_player: Optional[_PlayerBag] = None

    def _handle(event: str, el: ET.Element) -> None:
        nonlocal current_team, current_player
        tag = _norm_key(el.tag)

        if event == "end":
            if stack:
                stack.pop()
            if tag == "match" and bag.attrs is not None and "match" not in stack:
                bag.complete = True
            elif tag == "team":
                current_team = None
            elif tag == "player" and current_player is not None:
                bag.players.append(current_player)
                current_player = None
            el.clear()
            return

        stack.append(tag)
        if bag.attrs is None:
            if tag == "match":
                bag.attrs = _attrs(el)
            return
        if bag.complete:
            return

        if tag in _EVENT_TAGS:
            bag.events.append((tag, _attrs(el)))
        elif tag == "team" and current_player is None:
            bag.teams.append(_attrs(el))
            current_team = len(bag.teams) - 1
        elif tag == "player":
            if current_player is not None:
                bag.players.append(current_player)
            current_player = _PlayerBag(attrs=_attrs(el), team_index=current_team)
        elif tag == "stat" and current_player is not None:
            a = _attrs(el)
            name, value = a.get("name"), a.get("value")
            if name is not None and value is not None:
                current_player.stats.append((name.strip(), value.strip()))
        elif tag == "weapon" and current_player is not None:
            current_player.weapons.append(_attrs(el))
        elif tag == "item" and current_player is not None:
            current_player.items.append(_attrs(el))
        elif tag == "start":
            bag.start = _attrs(el)
        elif tag == "end":
            bag.end = _attrs(el)
        else:
            logger.debug("Ignoring unknown element <%s>", el.tag)

    try:
        parser.feed(text)
        for event, el in parser.read_events():
            _handle(event, el)
        parser.close()
        for event, el in parser.read_events():
            _handle(event, el)
    except ET.ParseError as e:
        # Input that simply stops between elements is a plain truncation.
        if e.code != _NO_ELEMENTS:
            bag.error = str(e)

    # Keep whatever was open when the input stopped.
    if current_player is not None:
        bag.players.append(current_player)
    return bag


# -----------------
# Phase 2: projection into MatchLog
# -----------------


class _Projector:
    def __init__(self) -> None:
        self.warnings: List[str] = []

    def warn(self, msg: str) -> None:
        if msg not in self.warnings:
            self.warnings.append(msg)

    def to_int(self, raw: Optional[str], what: str) -> int:
        if raw is None or not raw.strip():
            return 0
        n = _parse_number(raw)
        if n is None:
            self.warn(f"unreadable {what}: {raw!r}")
            return 0
        return int(n)

    def player(self, bag: _PlayerBag, team: str) -> Optional[PlayerEntry]:
        name = _pick(bag.attrs, "name", "nick")
        if not name:
            self.warn("player entry without a name skipped")
            return None

        counters: Dict[str, int] = {}
        pickups: Dict[str, int] = {}
        extra: List[Tuple[str, str]] = []
        listed: List[Tuple[str, str]] = []
        for stat_name, value in bag.stats:
            key = _norm_key(stat_name)
            if key in _PICKUP_KEYS:
                pickups[stat_name] = pickups.get(stat_name, 0) + self.to_int(value, f"{name} {stat_name}")
            elif key in _COUNTER_STATS:
                n = self.to_int(value, f"{name} {stat_name}")
                counters[_COUNTER_STATS[key]] = n
                listed.append((stat_name, str(n)))
            else:
                extra.append((stat_name, value))
                listed.append((stat_name, value))

        for item in bag.items:
            item_name = _pick(item, "name")
            if not item_name:
                continue
            raw = _pick(item, "pickups", "count", "value")
            pickups[item_name] = pickups.get(item_name, 0) + self.to_int(raw, f"{name} {item_name} pickups")

        weapons: List[WeaponStat] = []
        for w in bag.weapons:
            w_name = _pick(w, "name")
            if not w_name:
                continue
            weapons.append(
                WeaponStat(
                    name=w_name,
                    hits=self.to_int(_pick(w, "hits"), f"{name} {w_name} hits"),
                    shots=self.to_int(_pick(w, "shots"), f"{name} {w_name} shots"),
                    kills=self.to_int(_pick(w, "kills", "frags"), f"{name} {w_name} kills"),
                )
            )

        hits = counters.get("hits", sum(w.hits for w in weapons))
        shots = counters.get("shots", sum(w.shots for w in weapons))

        return PlayerEntry(
            name=name,
            player_id=_pick(bag.attrs, "id", "clientnum", "num") or "",
            team=_pick(bag.attrs, "team") or team,
            kills=counters.get("kills", 0),
            deaths=counters.get("deaths", 0),
            score=counters.get("score", 0),
            damage_given=counters.get("damage_given", 0),
            damage_taken=counters.get("damage_taken", 0),
            hits=hits,
            shots=shots,
            pickups=tuple(sorted(pickups.items())),
            weapons=tuple(weapons),
            extra_stats=tuple(extra),
            stats=tuple(listed),
        )

    def events(
        self, raw_events: List[Tuple[str, Dict[str, str]]], players: Tuple[PlayerEntry, ...]
    ) -> Tuple[Event, ...]:
        names = {p.name for p in players}
        ids = {p.player_id: p.name for p in players if p.player_id}

        def resolve(ref: Optional[str]) -> Optional[str]:
            r = (ref or "").strip()
            if r in names:
                return r
            return ids.get(r)

        out: List[Event] = []
        last_time = 0.0
        for seq, (tag, a) in enumerate(raw_events):
            kind = _EVENT_TAGS[tag]
            raw_time = _pick(a, "time", "t", "timestamp")
            t = _parse_seconds(raw_time)
            if t is None:
                if raw_time:
                    self.warn(f"{kind.value} event #{seq + 1}: unreadable time {raw_time!r}")
                t = last_time
            last_time = t

            if kind == EventKind.FRAG:
                attacker_ref = _pick(a, "attacker", "killer", "actor", "player") or ""
                target = resolve(_pick(a, "target", "victim"))
                if target is None:
                    self.warn(f"frag at {t:g}s dropped: unknown victim {_pick(a, 'target', 'victim')!r}")
                    continue
                if attacker_ref.lower() in _WORLD_NAMES:
                    attacker = ""
                else:
                    attacker = resolve(attacker_ref)
                    if attacker is None:
                        self.warn(f"frag at {t:g}s dropped: unknown attacker {attacker_ref!r}")
                        continue
                detail = _pick(a, "weapon", "mod", "means") or ""
                out.append(Event(kind, t, attacker, target, detail, seq))
                continue

            ref = _pick(a, "player", "target", "victim", "actor")
            who = resolve(ref)
            if who is None:
                self.warn(f"{kind.value} event at {t:g}s dropped: unknown player {ref!r}")
                continue
            if kind == EventKind.AWARD:
                detail = _pick(a, "name", "award", "type") or ""
                if not detail:
                    self.warn(f"award at {t:g}s for {who} has no name")
                    continue
            elif kind == EventKind.TEAM_CHANGE:
                detail = _pick(a, "team", "to", "newteam") or ""
            else:
                detail = _pick(a, "cause", "mod", "means") or ""
            out.append(Event(kind, t, who, "", detail, seq))

        # Stable: equal timestamps keep document order.
        return tuple(sorted(out, key=lambda e: e.time))


def parse_match_log(data: bytes, *, source: str = "") -> MatchLog:
    """Parse raw log bytes into a MatchLog.

    Raises Malformed when the content is not a match log at all. Partial damage
    (truncation, unreadable values, dangling references) is reported through
    MatchLog.warnings instead.
    """
    label = source or "<bytes>"
    if not (data or b"").strip():
        raise Malformed(f"{label}: empty file")

    bag = _collect(_decode(data))
    if bag.attrs is None:
        detail = f" ({bag.error})" if bag.error else ""
        raise Malformed(f"{label}: no <match> element found{detail}")

    proj = _Projector()
    m = bag.attrs

    map_name = _pick(m, "map", "mapname") or ""
    game_type = _pick(m, "type", "gametype", "mode") or ""

    teams: List[TeamEntry] = []
    team_names: List[str] = []
    for i, t in enumerate(bag.teams):
        name = _pick(t, "name") or (_TEAM_LABELS[i] if i < len(_TEAM_LABELS) else f"Team {i + 1}")
        team_names.append(name)
        teams.append(TeamEntry(name=name, score=proj.to_int(_pick(t, "score"), f"{name} score")))

    players: List[PlayerEntry] = []
    seen = set()
    for pb in bag.players:
        team = team_names[pb.team_index] if pb.team_index is not None else ""
        p = proj.player(pb, team)
        if p is None:
            continue
        if p.name in seen:
            proj.warn(f"duplicate player {p.name!r} ignored")
            continue
        seen.add(p.name)
        players.append(p)
        if pb.team_index is None and not p.team:
            # 1v1 / FFA: every player is its own side, scored by its Score stat.
            teams.append(TeamEntry(name=p.name, score=p.score))

    if not map_name and not players:
        raise Malformed(f"{label}: no output generated from XML")
    if not map_name:
        proj.warn("missing map name")

    is_team_game = _parse_bool(_pick(m, "isteamgame", "teamgame"))
    if is_team_game is None:
        is_team_game = len(bag.teams) >= 2

    start_raw = _pick(bag.start or {}, "time") or _pick(m, "starttime", "start")
    start_time = _parse_seconds(start_raw) or 0.0
    end_raw = _pick(bag.end or {}, "time") or _pick(m, "endtime", "end")
    end_time = _parse_seconds(end_raw)
    if end_raw and end_time is None:
        proj.warn(f"unreadable end marker {end_raw!r}")

    duration_raw = _pick(m, "duration")
    declared = _parse_seconds(duration_raw)
    if duration_raw and declared is None:
        proj.warn(f"unreadable duration {duration_raw!r}")

    player_tuple = tuple(players)
    events = proj.events(bag.events, player_tuple)

    if not bag.complete:
        if bag.error:
            proj.warn(f"log truncated or damaged: {bag.error}")
        else:
            proj.warn("log truncated: missing closing </match> tag")

    if proj.warnings:
        logger.info("Parsed %s with %d warning(s)", label, len(proj.warnings))

    return MatchLog(
        map_name=map_name,
        game_type=game_type,
        is_team_game=is_team_game,
        start_time=start_time,
        end_time=end_time,
        declared_duration=declared,
        complete=bag.complete,
        teams=tuple(teams),
        players=player_tuple,
        events=events,
        warnings=tuple(proj.warnings),
    )
