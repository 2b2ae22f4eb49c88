from __future__ import annotations

from typing import List, Optional

from q3report.matchlog.models import MatchReport, PlayerStat

TITLE = "Match concluded"

NAME_WIDTH_MAX = 20

# Characters Telegram MarkdownV2 requires escaping outside code entities.
_MD_SPECIAL = set("_*[]()~`>#+-=|{}.!\\")


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None or seconds < 0:
        return "unknown"
    total = int(round(seconds))
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    if h:
        return f"{h}:{m:02d}:{s:02d}"
    return f"{m}:{s:02d}"


def _clip(name: str, width: int) -> str:
    if len(name) <= width:
        return name
    return name[: width - 1] + "~"


def _table(players: tuple) -> List[str]:
    width = min(NAME_WIDTH_MAX, max([6] + [len(p.name) for p in players]))
    lines = [f"{'#':>2}  {'Player':<{width}}  {'Frags':>5}  {'Deaths':>6}  {'Eff':>6}"]
    for p in players:
        lines.append(
            f"{p.rank:>2}  {_clip(p.name, width):<{width}}  {p.frags:>5}  {p.deaths:>6}  "
            f"{p.efficiency * 100:>5.1f}%"
        )
    return lines


def _weapon_lines(p: PlayerStat) -> List[str]:
    out = [f"{p.name} (acc. {p.accuracy}%)"]
    for w in p.weapons:
        out.append(f"  {w.name}: shots {w.shots} | acc. {w.accuracy}% | kills {w.kills}")
    return out


def _stat_lines(p: PlayerStat) -> List[str]:
    out = [p.name]
    for name, value in p.stats:
        out.append(f"  {name}: {value}")
    if p.pickups:
        out.append("  Pickups: " + ", ".join(f"{item} {n}" for item, n in p.pickups))
    return out


def format_report(report: MatchReport) -> str:
    """Render a MatchReport as plain text.

    Layout: title, header line (map, mode, duration), team scores for team
    games, the ranked table, per-player stats and weapons, awards and
    parser warnings. Sections with nothing to show are left out.
    Output depends only on the report contents, never on the clock.
    """
    lines: List[str] = [TITLE]
    lines.append(
        f"Map: {report.map_name or '?'} | Mode: {report.game_type or '?'} | "
        f"Duration: {format_duration(report.duration)}"
    )
    if report.is_team_game and report.teams:
        lines.append(" | ".join(f"{t.name}: {t.score}" for t in report.teams))

    lines.append("")
    if report.players:
        lines.extend(_table(report.players))
    else:
        lines.append("No players recorded.")

    counted = [p for p in report.players if p.stats or p.pickups]
    if counted:
        lines.append("")
        lines.append("Player stats")
        for p in counted:
            lines.extend(_stat_lines(p))

    armed = [p for p in report.players if p.weapons]
    if armed:
        lines.append("")
        lines.append("Weapons")
        for p in armed:
            lines.extend(_weapon_lines(p))

    decorated = [p for p in report.players if p.awards]
    if decorated:
        lines.append("")
        lines.append("Awards")
        for p in decorated:
            lines.append(f"{p.name}: {', '.join(p.awards)}")

    if report.warnings:
        lines.append("")
        lines.append("Warnings")
        for w in report.warnings:
            lines.append(f"- {w}")

    return "\n".join(lines) + "\n"


def escape_markdown(message: str) -> str:
    return "".join("\\" + c if c in _MD_SPECIAL else c for c in message)


def to_markdown(text: str) -> str:
    """Bold first line, the rest as a MarkdownV2 pre block."""
    title, _, body = text.partition("\n")
    body = body.rstrip("\n").replace("\\", "\\\\").replace("`", "\\`")
    if not body:
        return f"*{escape_markdown(title)}*"
    return f"*{escape_markdown(title)}*\n```\n{body}\n```"
