"""Application entry point for the textweet daemon."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint

import settings
from adapters.chat_db_source import ChatDbRecordSource, ContactNotFound
from adapters.image_transformer import ImageTransformer
from adapters.json_ledger import JsonLedger
from adapters.twitter_publisher import TwitterPublisher
from client import build_twitter_clients
from core.config import PipelineConfig
from core.errors import SourceUnavailable
from core.orchestrator import PipelineOrchestrator, ShutdownReason

NAME = "TEXTWEET"
FONT = "tarty-1"

EXIT_OK = 0
EXIT_FAILURE_GUARD = 1
EXIT_PREFLIGHT = 2

LOGGER = logging.getLogger(__name__)

_CREDENTIALS_HELP = """\
Failed to authenticate with the X API.
Check TWITTER_API_KEY, TWITTER_API_SECRET, TWITTER_ACCESS_TOKEN and
TWITTER_ACCESS_SECRET in your .env file. Credentials are issued at
https://developer.x.com/en/portal/dashboard"""

_DISK_ACCESS_HELP = """\
textweet needs to read the Messages database. If access was denied:
1. Open System Settings > Privacy & Security > Full Disk Access
2. Add your terminal app (Terminal.app, iTerm, etc.)
3. Restart the terminal and try again"""


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/textweet.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        max_bytes = int(file_cfg.get("max_bytes", 5 * 1024 * 1024))
        backup_count = int(file_cfg.get("backup_count", 5))
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def _pipeline_config() -> PipelineConfig:
    return PipelineConfig(
        contact=settings.CONTACT,
        window_size=settings.WINDOW_SIZE,
        max_text_length=settings.MAX_TEXT_LENGTH,
        max_media=settings.MAX_MEDIA,
        poll_interval=settings.POLL_INTERVAL,
        upload_concurrency=settings.UPLOAD_CONCURRENCY,
    )


def _print_contacts(source: ChatDbRecordSource, limit: int = 20) -> None:
    try:
        handles = source.list_handles(limit)
    except SourceUnavailable as exc:
        print(f"Could not list contacts: {exc}", file=sys.stderr)
        return
    print(f"Available contacts (showing first {limit}):", file=sys.stderr)
    for handle_id, service in handles:
        print(f"   {handle_id} ({service})", file=sys.stderr)
    print("Copy the EXACT format from above into IMESSAGE_CONTACT.", file=sys.stderr)


async def _serve(orchestrator: PipelineOrchestrator, publisher: TwitterPublisher) -> Optional[ShutdownReason]:
    if not await publisher.verify_identity():
        print(_CREDENTIALS_HELP, file=sys.stderr)
        return None

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops.
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(orchestrator.request_shutdown))

    return await orchestrator.run()


def _run() -> int:
    _print_banner()
    _configure_logging()
    config = _pipeline_config()

    if not config.contact:
        print("IMESSAGE_CONTACT is not set (.env or config.json source.contact).", file=sys.stderr)
        return EXIT_PREFLIGHT
    if not settings.contact_looks_valid(config.contact):
        LOGGER.warning("Contact %s is neither an email address nor a +phone number", config.contact)

    LOGGER.info("Starting textweet")
    LOGGER.info(
        "Monitoring %s every %.1fs (max %s chars, %s images)",
        config.contact,
        config.poll_interval,
        config.max_text_length,
        config.max_media,
    )

    try:
        client, api = build_twitter_clients()
    except RuntimeError as exc:
        print(f"{exc}\n\n{_CREDENTIALS_HELP}", file=sys.stderr)
        return EXIT_PREFLIGHT
    publisher = TwitterPublisher(client, api)

    source = ChatDbRecordSource(settings.CHAT_DB_PATH)
    try:
        source.initialize(config.contact)
    except ContactNotFound as exc:
        print(exc, file=sys.stderr)
        _print_contacts(source)
        return EXIT_PREFLIGHT
    except SourceUnavailable as exc:
        print(f"{exc}\n\n{_DISK_ACCESS_HELP}", file=sys.stderr)
        return EXIT_PREFLIGHT

    ledger = JsonLedger(settings.LEDGER_PATH)
    transformer = ImageTransformer(settings.STAGING_DIR)
    orchestrator = PipelineOrchestrator(
        source=source,
        publisher=publisher,
        ledger=ledger,
        transformer=transformer,
        config=config,
    )

    reason = asyncio.run(_serve(orchestrator, publisher))
    if reason is None:
        return EXIT_PREFLIGHT

    posted, failed = ledger.counts()
    LOGGER.info("Shutdown complete: %s posted, %s failed", posted, failed)
    if reason is ShutdownReason.FAILURE_GUARD:
        return EXIT_FAILURE_GUARD
    return EXIT_OK


def _status() -> int:
    ledger = JsonLedger(settings.LEDGER_PATH)
    posted, failed = ledger.counts()
    print(f"Contact:        {settings.CONTACT or 'not configured'}")
    print(f"Messages DB:    {settings.CHAT_DB_PATH}")
    print(f"Poll interval:  {settings.POLL_INTERVAL:.1f}s")
    print(f"Ledger:         {ledger.path}")
    print(f"Posted:         {posted}")
    print(f"Failed:         {failed}")
    return EXIT_OK


def _contacts() -> int:
    _print_banner()
    source = ChatDbRecordSource(settings.CHAT_DB_PATH)
    _print_contacts(source)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="textweet")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the watcher")
    subparsers.add_parser("status", help="Show ledger counts and configuration")
    subparsers.add_parser(
        "contacts",
        help="List contacts in the Messages database to copy into IMESSAGE_CONTACT.",
    )

    args = parser.parse_args(argv)
    if args.command == "status":
        sys.exit(_status())
    if args.command == "contacts":
        sys.exit(_contacts())
    sys.exit(_run())


if __name__ == "__main__":
    main()
