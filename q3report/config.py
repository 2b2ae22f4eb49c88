from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


@dataclass(frozen=True)
class Settings:
    # Input
    watch_folder: str
    file_pattern: str

    # Telegram
    telegram_bot_token: str
    telegram_chat_id: str
    telegram_api_url: str

    # Record store (DATABASE_URL wins over STATE_FILE)
    database_url: str
    state_file: str

    # Completion detection
    quiescence_seconds: float
    poll_interval_seconds: float
    watch_max_backoff_seconds: float
    read_max_attempts: int

    # Delivery
    delivery_max_attempts: int
    delivery_backoff_seconds: float
    delivery_max_backoff_seconds: float
    delivery_timeout_seconds: float
    delivery_concurrency: int

    # Pipeline
    workers: int
    queue_size: int

    # General
    log_level: str
    environment: str
    selftest_enabled: bool

    @staticmethod
    def from_env() -> "Settings":
        # TELOXIDE_TOKEN is what earlier deployments of the bot used.
        token = _get_str("TELEGRAM_BOT_TOKEN") or _get_str("TELOXIDE_TOKEN")

        return Settings(
            watch_folder=_get_str("WATCH_FOLDER"),
            file_pattern=_get_str("FILE_PATTERN", "*.xml") or "*.xml",
            telegram_bot_token=token,
            telegram_chat_id=_get_str("TELEGRAM_CHAT_ID"),
            telegram_api_url=_get_str("TELEGRAM_API_URL", "https://api.telegram.org"),
            database_url=_get_str("DATABASE_URL"),
            state_file=_get_str("STATE_FILE", "q3report-state.json"),
            quiescence_seconds=_get_float("QUIESCENCE_SECONDS", 3.0),
            poll_interval_seconds=_get_float("POLL_INTERVAL_SECONDS", 1.0),
            watch_max_backoff_seconds=_get_float("WATCH_MAX_BACKOFF_SECONDS", 60.0),
            read_max_attempts=_get_int("READ_MAX_ATTEMPTS", 5),
            delivery_max_attempts=_get_int("DELIVERY_MAX_ATTEMPTS", 5),
            delivery_backoff_seconds=_get_float("DELIVERY_BACKOFF_SECONDS", 1.0),
            delivery_max_backoff_seconds=_get_float("DELIVERY_MAX_BACKOFF_SECONDS", 60.0),
            delivery_timeout_seconds=_get_float("DELIVERY_TIMEOUT_SECONDS", 15.0),
            delivery_concurrency=_get_int("DELIVERY_CONCURRENCY", 2),
            workers=_get_int("WORKERS", 2),
            queue_size=_get_int("QUEUE_SIZE", 64),
            log_level=(_get_str("LOG_LEVEL", "INFO") or "INFO").upper(),
            environment=_get_str("ENVIRONMENT", "production") or "production",
            selftest_enabled=_get_bool("SELFTEST_ENABLED", True),
        )

    def with_overrides(
        self,
        *,
        watch_folder: Optional[str] = None,
        chat_id: Optional[str] = None,
        state_file: Optional[str] = None,
    ) -> "Settings":
        """Command-line values win over the environment."""
        s = self
        if watch_folder:
            s = replace(s, watch_folder=watch_folder.strip())
        if chat_id:
            s = replace(s, telegram_chat_id=chat_id.strip())
        if state_file:
            s = replace(s, state_file=state_file.strip())
        return s
