"""Static configuration for swapwatch.

All user-editable settings (source, pipeline, storage, classifier, messenger,
schedule, logging) live in a single JSON file for quick edits without
touching Python. Secrets stay in the environment (.env).
"""

import json
import os

from dotenv import load_dotenv

from swapwatch.core.config import PipelineConfig

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

# SWAPWATCH_CONFIG points at an alternative config file (e.g. in containers).
CONFIG_PATH = os.getenv("SWAPWATCH_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Listing source.
_source = _CONFIG.get("source", {})
SUBREDDIT = _source.get("subreddit", "CanadianHardwareSwap")
SOURCE_LIMIT = int(_source.get("limit", 100))
USER_AGENT = _source.get("user_agent", "script:swapwatch:v1.0 (deal feed relay)")

# Pipeline tuning. Worker count bounds load on the classifier and Telegram.
_pipeline = _CONFIG.get("pipeline", {})
PIPELINE = PipelineConfig(
    workers=int(_pipeline.get("workers", 10)),
    call_timeout=float(_pipeline.get("call_timeout", 60)),
    fetch_timeout=float(_pipeline.get("fetch_timeout", 300)),
    classify_timeout=float(_pipeline.get("classify_timeout", 60)),
    routing_ttl=float(_pipeline.get("routing_ttl_seconds", 300)),
    feed_policy=_pipeline.get("feed_policy", "matched_only"),
    terminal_statuses=frozenset(
        status.lower() for status in _pipeline.get("terminal_statuses", ["sold", "closed"])
    ),
)

# Where to store the SQLite database and how many item records to retain.
_storage = _CONFIG.get("storage", {})
DB_PATH = _resolve_path(_storage.get("db_path", "swapwatch.db"))
MAX_RECORDS = int(_storage.get("max_records", 500))

# Classifier model; the API key comes from GEMINI_API_KEY.
_classifier = _CONFIG.get("classifier", {})
CLASSIFIER_MODEL = _classifier.get("model", "gemini-2.5-flash-lite")
CLASSIFIER_BASE_URL = _classifier.get(
    "base_url", "https://generativelanguage.googleapis.com/v1beta/openai/"
)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")

# Messenger method switches adapters without changing core logic.
# - "telethon": bot login through Telethon (needs API_ID/API_HASH/BOT_TOKEN)
# - "bot_api": plain HTTP Bot API (needs BOT_TOKEN)
_messenger = _CONFIG.get("messenger", {})
MESSENGER_METHOD = _messenger.get("method", "telethon")
BOT_TOKEN = os.getenv("BOT_TOKEN")

# Seconds between batch runs for the `run` command.
_schedule = _CONFIG.get("schedule", {})
INTERVAL_SECONDS = float(_schedule.get("interval_seconds", 60))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
