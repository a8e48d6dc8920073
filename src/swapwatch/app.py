"""Application entry point for the swapwatch relay."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import List, Optional, Tuple

from art import tprint

from swapwatch.core.errors import SwapwatchError
from swapwatch.core.matcher import normalize_terms
from swapwatch.core.pipeline import BatchPipeline, current_run_id

NAME = "SWAPWATCH"
FONT = "tarty-1"


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


class _RunIdFilter(logging.Filter):
    """Stamp each record with the batch run it was emitted from."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = current_run_id.get()
        return True


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
    from swapwatch import settings

    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s [run %(run_id)s] %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets, fmt=fmt, datefmt=datefmt)
    run_id_filter = _RunIdFilter()

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(run_id_filter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/swapwatch.log")
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
        file_handler.addFilter(run_id_filter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)
    # Telethon is chatty at INFO; keep our own records readable.
    logging.getLogger("telethon").setLevel(max(level, logging.WARNING))


def _open_storage():
    from swapwatch import settings
    from swapwatch.adapters.sqlite_storage import SQLiteStorage

    storage = SQLiteStorage(settings.DB_PATH, max_records=settings.MAX_RECORDS)
    storage.init_db()
    return storage


async def _build_messenger() -> Tuple[object, object]:
    """Return (messenger, telethon client or None) for the configured method."""

    from swapwatch import settings

    # Select the messenger based on configuration to keep the core pipeline
    # independent from delivery details.
    if settings.MESSENGER_METHOD == "bot_api":
        from swapwatch.adapters.telegram_bot_api_messenger import TelegramBotApiMessenger

        return TelegramBotApiMessenger(settings.BOT_TOKEN or ""), None

    if settings.MESSENGER_METHOD == "telethon":
        from swapwatch.adapters.telegram_messenger import TelegramMessenger
        from swapwatch.client import build_bot_client

        client = await build_bot_client(settings.BOT_TOKEN or "")
        return TelegramMessenger(client), client

    raise RuntimeError("messenger.method must be 'telethon' or 'bot_api'")


async def _serve(once: bool) -> int:
    from swapwatch import settings
    from swapwatch.adapters.gemini_classifier import GeminiClassifier
    from swapwatch.adapters.reddit_source import RedditSource

    logger = logging.getLogger(__name__)

    storage = _open_storage()
    classifier = GeminiClassifier(
        api_key=settings.GEMINI_API_KEY,
        model=settings.CLASSIFIER_MODEL,
        base_url=settings.CLASSIFIER_BASE_URL,
    )
    source = RedditSource(
        subreddit=settings.SUBREDDIT,
        limit=settings.SOURCE_LIMIT,
        user_agent=settings.USER_AGENT,
    )
    messenger, client = await _build_messenger()
    logger.info("Selected messenger - %s", settings.MESSENGER_METHOD)

    pipeline = BatchPipeline(
        store=storage,
        classifier=classifier,
        source=source,
        messenger=messenger,
        config=settings.PIPELINE,
    )

    try:
        # Runs are awaited back to back, so a new batch never starts while
        # the previous one is still in flight.
        while True:
            try:
                await pipeline.run_batch()
            except SwapwatchError as exc:
                logger.error("Pipeline failed: %s", exc)
                if once:
                    return 1
            if once:
                return 0
            await asyncio.sleep(settings.INTERVAL_SECONDS)
    finally:
        if client is not None:
            await client.disconnect()


def _run(once: bool) -> int:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting swapwatch")
    try:
        return asyncio.run(_serve(once))
    except KeyboardInterrupt:
        logger.info("Stopped")
        return 0


def _describe_query(must: List[str], any_of: List[str], must_not: List[str]) -> str:
    parts = []
    if must:
        parts.append(" AND ".join(must))
    if any_of:
        parts.append("(" + " OR ".join(any_of) + ")")
    query = " AND ".join(parts)
    if must_not:
        query = f"{query} NOT ({' OR '.join(must_not)})"
    return query


def _alerts(args: argparse.Namespace) -> int:
    storage = _open_storage()

    if args.alerts_command == "add":
        must = normalize_terms(args.must)
        any_of = normalize_terms(args.any)
        must_not = normalize_terms(args.exclude)
        if not must and not any_of:
            print("An alert needs at least one --must or --any term.")
            return 2
        rule = storage.add_rule(
            owner_id=args.owner,
            scope_id=args.scope,
            must_have=must,
            any_of=any_of,
            must_not=must_not,
            raw_query=args.raw or _describe_query(must, any_of, must_not),
        )
        print(f"Added alert {rule.rule_id}: \"{rule.raw_query}\"")
        return 0

    if args.alerts_command == "list":
        rules = storage.list_owner_rules(args.scope, args.owner)
        if not rules:
            print("No active alerts for this owner in this scope.")
            return 0
        for index, rule in enumerate(rules, start=1):
            print(f"{index}. {rule.rule_id} | \"{rule.raw_query}\"")
        return 0

    if args.alerts_command == "delete":
        if storage.delete_rule(args.rule_id):
            print(f"Deleted alert {args.rule_id}")
            return 0
        print(f"No alert with id {args.rule_id}")
        return 1

    if args.alerts_command == "clear":
        removed = storage.delete_owner_rules(args.scope, args.owner)
        print(f"Deleted {removed} alert(s)")
        return 0

    return 2


def _scopes(args: argparse.Namespace) -> int:
    storage = _open_storage()

    if args.scopes_command == "set":
        storage.save_routing_config(args.scope_id, args.feed, args.ping or "")
        print(f"Routing saved for scope {args.scope_id}")
        return 0

    if args.scopes_command == "list":
        configs = storage.list_routing_configs()
        if not configs:
            print("No scopes configured.")
            return 0
        for config in configs:
            print(f"{config.scope_id} | feed={config.feed_destination} | ping={config.ping_destination or '-'}")
        return 0

    return 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swapwatch")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run batches on the configured interval")
    subparsers.add_parser("once", help="Run a single batch and exit")

    alerts = subparsers.add_parser("alerts", help="Manage subscriber alerts")
    alerts_sub = alerts.add_subparsers(dest="alerts_command", required=True)

    add = alerts_sub.add_parser("add", help="Add an alert rule")
    add.add_argument("--scope", required=True, help="Routing scope id")
    add.add_argument("--owner", required=True, help="Subscriber id (Telegram user id or @username)")
    add.add_argument("--must", action="append", default=[], help="Term that must appear (repeatable)")
    add.add_argument("--any", action="append", default=[], help="Term of which at least one must appear (repeatable)")
    add.add_argument("--not", dest="exclude", action="append", default=[], help="Term that must not appear (repeatable)")
    add.add_argument("--raw", help="Original query text shown in listings")

    listing = alerts_sub.add_parser("list", help="List an owner's alerts")
    listing.add_argument("--scope", required=True)
    listing.add_argument("--owner", required=True)

    delete = alerts_sub.add_parser("delete", help="Delete one alert")
    delete.add_argument("rule_id")

    clear = alerts_sub.add_parser("clear", help="Delete all of an owner's alerts in a scope")
    clear.add_argument("--scope", required=True)
    clear.add_argument("--owner", required=True)

    scopes = subparsers.add_parser("scopes", help="Manage routing scopes")
    scopes_sub = scopes.add_subparsers(dest="scopes_command", required=True)

    scope_set = scopes_sub.add_parser("set", help="Set feed and ping chats for a scope")
    scope_set.add_argument("scope_id")
    scope_set.add_argument("--feed", required=True, help="Feed chat (@channel or -100... id)")
    scope_set.add_argument("--ping", help="Ping chat for subscriber mentions")

    scopes_sub.add_parser("list", help="List configured scopes")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "alerts":
        return _alerts(args)
    if args.command == "scopes":
        return _scopes(args)
    return _run(once=args.command == "once")


if __name__ == "__main__":
    raise SystemExit(main())
