from .models import FileIdentity, MatchLog, MatchReport, Outcome, OutcomeState
from .parser import Malformed, parse_match_log
from .stats import build_report

__all__ = [
    "FileIdentity",
    "MatchLog",
    "MatchReport",
    "Outcome",
    "OutcomeState",
    "Malformed",
    "parse_match_log",
    "build_report",
]
