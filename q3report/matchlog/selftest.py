from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List

from q3report.matchlog.parser import Malformed, parse_match_log
from q3report.matchlog.stats import build_report
from q3report.report import format_report

logger = logging.getLogger("q3report")


DEFAULT_SELFTEST_LOGS: List[bytes] = [
    # duel, players outside any team
    b'<match map="q3dm17" type="1v1" duration="10:00" isTeamGame="false">'
    b'<player name="A"><stat name="Score" value="3"/><stat name="Kills" value="3"/>'
    b'<weapon name="RL" hits="5" shots="20" kills="3"/></player>'
    b'<player name="B"><stat name="Score" value="1"/><stat name="Kills" value="1"/></player>'
    b"</match>",
    # truncated team game with events
    b'<match map="q3dm6" type="TDM"><team name="Red" score="1"><player name="A"/></team>'
    b'<team name="Blue" score="0"><player name="B"/></team>'
    b'<events><frag time="0:05" attacker="A" target="B" weapon="RG"/>',
]

MALFORMED_SAMPLE = b"this is not a match log"


def run_pipeline_selftest(logs: List[bytes] | None = None) -> None:
    """Smoke-test parser, aggregator and formatter at startup.

    Only checks that the pipeline does not raise on known-good input and that
    garbage is rejected as Malformed.
    """
    samples = logs or DEFAULT_SELFTEST_LOGS
    stamp = datetime(2000, 1, 1, tzinfo=timezone.utc)
    for data in samples:
        format_report(build_report(parse_match_log(data, source="selftest"), generated_at=stamp))

    try:
        parse_match_log(MALFORMED_SAMPLE, source="selftest")
    except Malformed:
        pass
    else:
        raise RuntimeError("self-test: garbage input was not rejected")

    logger.info("Pipeline self-test passed (%d logs).", len(samples))
