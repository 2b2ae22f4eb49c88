"""q3report: watch a folder of match-stat XML logs and post a report per match to Telegram.

Examples:
  TELEGRAM_BOT_TOKEN=123:abc q3report --folder-path /srv/q3/stats --chat-id -1001234567890
  q3report -f ./stats -c -1001234567890 --dry-run

Every other setting comes from the environment (see q3report.config).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import regex as re

from q3report.config import Settings
from q3report.db import StoreError, open_store
from q3report.matchlog.selftest import run_pipeline_selftest
from q3report.service import build_service
from q3report.telegram_bot import LoggingSender, TelegramBotClient

logger = logging.getLogger("q3report")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_RX_CHAT_ID = re.compile(r"^(?:-?\d+|@[A-Za-z][A-Za-z0-9_]{3,})$")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="q3report", description="Post Quake 3 match reports to Telegram.")
    p.add_argument("-f", "--folder-path", default="", help="Folder the game server writes stats XML into")
    p.add_argument("-c", "--chat-id", default="", help="Telegram chat id (e.g. -1001234567890 or @channel)")
    p.add_argument("--state-file", default="", help="JSON file remembering processed logs (overrides STATE_FILE)")
    p.add_argument("--dry-run", action="store_true", help="Log reports instead of sending them")
    return p.parse_args(argv)


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: fall back to KeyboardInterrupt for Ctrl+C.
            pass


async def serve(settings: Settings, *, dry_run: bool = False) -> None:
    store = open_store(database_url=settings.database_url, state_file=settings.state_file)
    if dry_run:
        sender = LoggingSender()
    else:
        sender = TelegramBotClient(settings.telegram_bot_token, api_url=settings.telegram_api_url)

    stop = asyncio.Event()
    _install_signal_handlers(stop)

    await store.start()
    try:
        service = build_service(settings, store=store, sender=sender)
        await service.run(stop)
    finally:
        if isinstance(sender, TelegramBotClient):
            await sender.aclose()
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env().with_overrides(
        watch_folder=args.folder_path, chat_id=args.chat_id, state_file=args.state_file
    )

    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format=LOG_FORMAT)
    logger.info("Starting q3report (%s)...", settings.environment)

    if not settings.watch_folder:
        print("No folder to watch: pass --folder-path or set WATCH_FOLDER", file=sys.stderr)
        return 2
    if not args.dry_run:
        if not _RX_CHAT_ID.match(settings.telegram_chat_id):
            print(f"Invalid chat id {settings.telegram_chat_id!r}", file=sys.stderr)
            return 2
        if not settings.telegram_bot_token:
            print("TELEGRAM_BOT_TOKEN is not set", file=sys.stderr)
            return 2

    if settings.selftest_enabled:
        run_pipeline_selftest()

    logger.info("Monitoring folder: %s", settings.watch_folder)
    logger.info("Target chat ID: %s", settings.telegram_chat_id or "-")

    try:
        asyncio.run(serve(settings, dry_run=args.dry_run))
    except FileNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 2
    except StoreError as e:
        logger.critical("Record store failure, stopping to avoid duplicate reports: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
