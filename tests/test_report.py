from __future__ import annotations

from datetime import datetime, timezone

from q3report.matchlog import build_report, parse_match_log
from q3report.matchlog.models import MatchReport, PlayerStat, TeamStat, WeaponStat
from q3report.report import escape_markdown, format_duration, format_report, to_markdown


def _report() -> MatchReport:
    return MatchReport(
        map_name="q3dm6",
        game_type="TDM",
        duration=600.0,
        is_team_game=True,
        players=(
            PlayerStat(
                1,
                "Player1",
                "Red",
                10,
                2,
                10 / 12,
                44,
                awards=("Excellent x2",),
                weapons=(WeaponStat("MG", 13, 29, 1),),
            ),
            PlayerStat(2, "Player2", "Blue", 10, 3, 10 / 13, 0),
        ),
        teams=(TeamStat("Red", 5, 10, 2), TeamStat("Blue", 0, 10, 3)),
        warnings=("log truncated: missing closing </match> tag",),
    )


def test_format_report_layout() -> None:
    expected = (
        "Match concluded\n"
        "Map: q3dm6 | Mode: TDM | Duration: 10:00\n"
        "Red: 5 | Blue: 0\n"
        "\n"
        " #  Player   Frags  Deaths     Eff\n"
        " 1  Player1     10       2   83.3%\n"
        " 2  Player2     10       3   76.9%\n"
        "\n"
        "Weapons\n"
        "Player1 (acc. 44%)\n"
        "  MG: shots 29 | acc. 44% | kills 1\n"
        "\n"
        "Awards\n"
        "Player1: Excellent x2\n"
        "\n"
        "Warnings\n"
        "- log truncated: missing closing </match> tag\n"
    )
    assert format_report(_report()) == expected


def test_format_report_is_deterministic(sample) -> None:
    log = parse_match_log(sample("tdm.xml"))
    early = build_report(log, generated_at=datetime(2001, 1, 1, tzinfo=timezone.utc))
    late = build_report(log, generated_at=datetime(2030, 1, 1, tzinfo=timezone.utc))

    assert format_report(early) == format_report(late)


def test_player_stats_follow_document_order(sample) -> None:
    text = format_report(build_report(parse_match_log(sample("tdm.xml"))))

    assert (
        "\nPlayer stats\n"
        "Player1\n"
        "  Score: 5\n"
        "  Kills: 10\n"
        "  Deaths: 2\n"
        "  Damage Given: 2300\n"
        "  Damage Taken: 900\n"
        "  Net: 8\n"
        "  Pickups: Quad 1, RA 4\n"
        "Player2\n"
        "  Score: 3\n"
        "  Kills: 10\n"
        "  Deaths: 3\n"
        "Player3\n"
        "  Score: 1\n"
        "  Kills: 5\n"
        "  Deaths: 1\n"
        "\n"
        "Weapons\n"
    ) in text


def test_empty_match_and_unknown_fields() -> None:
    report = MatchReport(map_name="", game_type="", duration=None, is_team_game=False, players=())

    assert format_report(report) == (
        "Match concluded\nMap: ? | Mode: ? | Duration: unknown\n\nNo players recorded.\n"
    )


def test_long_names_are_clipped() -> None:
    name = "A" * 30
    report = MatchReport(
        map_name="m",
        game_type="FFA",
        duration=5,
        is_team_game=False,
        players=(PlayerStat(1, name, "", 0, 0, 0.0, 0),),
    )
    table_row = format_report(report).splitlines()[4]

    assert "A" * 19 + "~" in table_row
    assert name not in table_row


def test_format_duration() -> None:
    assert format_duration(None) == "unknown"
    assert format_duration(59.6) == "1:00"
    assert format_duration(605) == "10:05"
    assert format_duration(3725) == "1:02:05"


def test_escape_markdown() -> None:
    assert escape_markdown("Map: q3dm6 (TDM) 1.5!") == "Map: q3dm6 \\(TDM\\) 1\\.5\\!"
    assert escape_markdown("a_b*c") == "a\\_b\\*c"


def test_to_markdown_wraps_body_in_pre_block() -> None:
    md = to_markdown("Match concluded\nA `quoted` \\ name\n")

    assert md == "*Match concluded*\n```\nA \\`quoted\\` \\\\ name\n```"
    assert to_markdown("Only a title.") == "*Only a title\\.*"
