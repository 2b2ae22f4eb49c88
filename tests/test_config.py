from __future__ import annotations

import pytest

from q3report.config import Settings
from q3report.main import main, parse_args

_ENV = (
    "WATCH_FOLDER",
    "TELEGRAM_BOT_TOKEN",
    "TELOXIDE_TOKEN",
    "TELEGRAM_CHAT_ID",
    "STATE_FILE",
    "DATABASE_URL",
    "QUIESCENCE_SECONDS",
    "DELIVERY_MAX_ATTEMPTS",
    "SELFTEST_ENABLED",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    s = Settings.from_env()

    assert s.file_pattern == "*.xml"
    assert s.state_file == "q3report-state.json"
    assert s.quiescence_seconds == 3.0
    assert s.delivery_max_attempts == 5
    assert s.selftest_enabled is True
    assert s.log_level == "INFO"


def test_environment_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TELOXIDE_TOKEN", " 123:abc ")
    monkeypatch.setenv("QUIESCENCE_SECONDS", "0.5")
    monkeypatch.setenv("DELIVERY_MAX_ATTEMPTS", "not-a-number")
    monkeypatch.setenv("SELFTEST_ENABLED", "off")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    s = Settings.from_env()

    assert s.telegram_bot_token == "123:abc"
    assert s.quiescence_seconds == 0.5
    assert s.delivery_max_attempts == 5
    assert s.selftest_enabled is False
    assert s.log_level == "DEBUG"


def test_command_line_overrides_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCH_FOLDER", "/env/folder")
    monkeypatch.setenv("TELEGRAM_CHAT_ID", "-1")

    s = Settings.from_env().with_overrides(watch_folder="/cli/folder", chat_id="", state_file="s.json")

    assert (s.watch_folder, s.telegram_chat_id, s.state_file) == ("/cli/folder", "-1", "s.json")


def test_parse_args() -> None:
    args = parse_args(["-f", "/srv/stats", "-c", "-1001234567890", "--dry-run"])

    assert args.folder_path == "/srv/stats"
    assert args.chat_id == "-1001234567890"
    assert args.dry_run is True


def test_main_requires_folder() -> None:
    assert main(["--dry-run"]) == 2


def test_main_rejects_bad_chat_id(tmp_path) -> None:
    assert main(["-f", str(tmp_path), "-c", "not a chat"]) == 2


def test_main_requires_token(tmp_path) -> None:
    assert main(["-f", str(tmp_path), "-c", "-1001234567890"]) == 2


def test_main_missing_folder_exits_with_usage_error(tmp_path) -> None:
    assert main(["-f", str(tmp_path / "nope"), "--dry-run", "--state-file", str(tmp_path / "s.json")]) == 2
