"""Application entry point for the circlewatch notification service."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint

import settings
from adapters.log_sender import LogSender
from adapters.sqlite_storage import SQLiteStorage
from adapters.subgraph_mapper import parse_event
from adapters.subgraph_source import SubgraphEventSource
from adapters.telegram_bot_sender import TelegramBotSender
from core.config import PollerConfig, SchedulerConfig
from core.dedup import DedupRegistry
from core.dispatcher import DeliveryDispatcher
from core.errors import CircleWatchError
from core.fanout import NotificationFanout
from core.poller import EventPoller
from core.recipients import RecipientResolver
from core.scheduler import DeadlineScheduler, SchedulerState
from core.service import NotificationService

NAME = "CIRCLEWATCH"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


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
    # Longest first so a secret containing another is masked whole.
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/circlewatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # httpx logs every request at INFO; keep the polling loop quiet.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _open_storage() -> SQLiteStorage:
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    return storage


def _build_sender(storage: SQLiteStorage):
    # Select the push adapter based on configuration to keep the core
    # dispatcher independent from delivery details.
    if settings.DELIVERY_METHOD == "bot":
        if not settings.BOT_TOKEN:
            raise RuntimeError("BOT_API is required when delivery.method=bot")
        return TelegramBotSender(
            bot_token=settings.BOT_TOKEN,
            chat_lookup=storage.get_chat_id,
            frontend_base_url=settings.FRONTEND_BASE_URL,
        )
    if settings.DELIVERY_METHOD == "log":
        return LogSender(frontend_base_url=settings.FRONTEND_BASE_URL)
    raise RuntimeError("delivery.method must be 'bot' or 'log'")


def _build_service(storage: SQLiteStorage) -> tuple[NotificationService, list[Any]]:
    """Wire adapters into the core; returns the service and closeable clients."""

    if not settings.SUBGRAPH_URL:
        raise RuntimeError("SUBGRAPH_URL is required (env or subgraph.url in config.json)")

    source = SubgraphEventSource(
        url=settings.SUBGRAPH_URL,
        api_key=settings.SUBGRAPH_API_KEY,
        page_size=settings.SUBGRAPH_PAGE_SIZE,
        timeout=settings.SUBGRAPH_TIMEOUT_SECONDS,
    )
    sender = _build_sender(storage)
    LOGGER.info("Selected delivery method - %s", settings.DELIVERY_METHOD)

    dispatcher = DeliveryDispatcher(preferences=storage, sender=sender)
    fanout = NotificationFanout(RecipientResolver(source), dispatcher)
    poller = EventPoller(
        source=source,
        fanout=fanout,
        checkpoint=storage,
        config=PollerConfig(
            interval_seconds=settings.POLL_INTERVAL_SECONDS,
            max_retries=settings.POLL_MAX_RETRIES,
            base_delay_seconds=settings.POLL_BASE_DELAY_SECONDS,
            heartbeat_every=settings.POLL_HEARTBEAT_EVERY,
        ),
    )
    scheduler = DeadlineScheduler(
        source=source,
        dispatcher=dispatcher,
        config=SchedulerConfig(
            daily_check_time=settings.DAILY_CHECK_TIME,
            fallback_interval_hours=settings.FALLBACK_INTERVAL_HOURS,
            initial_delay_seconds=settings.INITIAL_DELAY_SECONDS,
            weekly_reset_weekday=settings.WEEKLY_RESET_WEEKDAY,
            weekly_reset_time=settings.WEEKLY_RESET_TIME,
        ),
        state=SchedulerState(dedup=DedupRegistry(storage)),
    )
    service = NotificationService(poller, scheduler, fanout, parse_event)
    closeables = [client for client in (source, sender) if hasattr(client, "aclose")]
    return service, closeables


async def _close_all(closeables: list[Any]) -> None:
    for client in closeables:
        await client.aclose()


def _run() -> None:
    _print_banner()
    _configure_logging()
    LOGGER.info("Starting circlewatch")

    storage = _open_storage()

    async def _serve() -> None:
        service, closeables = _build_service(storage)
        try:
            await service.run()
        finally:
            await _close_all(closeables)

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        LOGGER.info("Shutting down")


def _simulate(event_type: str, raw_json: str) -> None:
    _configure_logging()
    payload = json.loads(raw_json)
    if not isinstance(payload, dict):
        raise SystemExit("simulate payload must be a JSON object")

    storage = _open_storage()

    async def _simulate_once() -> None:
        service, closeables = _build_service(storage)
        try:
            event = await service.simulate(event_type, payload)
        finally:
            await _close_all(closeables)
        print(f"Simulated {event.kind.value} event {event.id}")

    try:
        asyncio.run(_simulate_once())
    except CircleWatchError as exc:
        raise SystemExit(str(exc)) from exc


def _status() -> None:
    storage = _open_storage()
    cursor = storage.load_cursor()
    print(f"cursor: {cursor if cursor is not None else 'not initialized'}")
    print(f"dedup keys: {storage.count_dedup_keys()}")
    print(f"delivery method: {settings.DELIVERY_METHOD}")


def _subscribe(address: str, chat_id: str, preferences_json: Optional[str]) -> None:
    preferences = json.loads(preferences_json) if preferences_json else {}
    if not isinstance(preferences, dict):
        raise SystemExit("--preferences must be a JSON object")
    storage = _open_storage()
    storage.upsert_subscription(address, chat_id, preferences)
    print(f"Subscribed {address.lower()} -> chat {chat_id}")


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="circlewatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the ledger poller and deadline scheduler")

    simulate = subparsers.add_parser("simulate", help="Push a synthetic ledger event through the fan-out")
    simulate.add_argument("event_type", help="Event alias (join, payout, ...) or kind name")
    simulate.add_argument("payload", help="Raw event record as JSON")

    subparsers.add_parser("status", help="Show the persisted cursor and dedup state")

    subscribe = subparsers.add_parser("subscribe", help="Link an address to a bot chat")
    subscribe.add_argument("address")
    subscribe.add_argument("chat_id")
    subscribe.add_argument("--preferences", help="JSON object of camelCase preference flags")

    args = parser.parse_args(argv)
    if args.command == "simulate":
        _simulate(args.event_type, args.payload)
        return
    if args.command == "status":
        _status()
        return
    if args.command == "subscribe":
        _subscribe(args.address, args.chat_id, args.preferences)
        return
    _run()


if __name__ == "__main__":
    main()
