"""Static configuration for circlewatch.

All user-editable settings (ledger endpoint, polling, scheduler timers,
delivery, logging) live in a single JSON file for quick edits without
touching Python. Secrets come from the environment or a .env file.
"""

import json
import os
from datetime import time

from dotenv import load_dotenv

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

load_dotenv(os.path.join(PROJECT_ROOT, ".env"))

# Where to store the SQLite database (cursor, subscriptions, dedup keys).
DB_PATH = os.getenv("CIRCLEWATCH_DB") or os.path.join(os.path.dirname(__file__), "circlewatch.db")

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _parse_time(value: str, default: time) -> time:
    """Parse "HH:MM" into a time; fall back to the default when unset."""

    if not value:
        return default
    hours, _, minutes = str(value).partition(":")
    return time(int(hours), int(minutes or 0))


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Ledger endpoint. The environment wins so deployments can swap networks
# without editing config.json.
_subgraph = _CONFIG.get("subgraph", {})
SUBGRAPH_URL = os.getenv("SUBGRAPH_URL") or _subgraph.get("url")
SUBGRAPH_API_KEY = os.getenv("SUBGRAPH_API_KEY")
SUBGRAPH_PAGE_SIZE = int(_subgraph.get("page_size", 1000))
SUBGRAPH_TIMEOUT_SECONDS = float(_subgraph.get("timeout_seconds", 30))

# Polling loop cadence and retry policy.
_polling = _CONFIG.get("polling", {})
POLL_INTERVAL_SECONDS = float(_polling.get("interval_seconds", 30))
POLL_MAX_RETRIES = int(_polling.get("max_retries", 3))
POLL_BASE_DELAY_SECONDS = float(_polling.get("base_delay_seconds", 1))
POLL_HEARTBEAT_EVERY = int(_polling.get("heartbeat_every", 10))

# Deadline scheduler timers (local wall-clock).
# - WEEKLY_RESET_WEEKDAY: Monday=0 ... Sunday=6
_scheduler = _CONFIG.get("scheduler", {})
DAILY_CHECK_TIME = _parse_time(_scheduler.get("daily_check_time"), time(9, 0))
FALLBACK_INTERVAL_HOURS = float(_scheduler.get("fallback_interval_hours", 6))
INITIAL_DELAY_SECONDS = float(_scheduler.get("initial_delay_seconds", 5))
WEEKLY_RESET_WEEKDAY = int(_scheduler.get("weekly_reset_weekday", 6))
WEEKLY_RESET_TIME = _parse_time(_scheduler.get("weekly_reset_time"), time(0, 0))

# Delivery method switches push adapters without changing core logic.
_delivery = _CONFIG.get("delivery", {})
DELIVERY_METHOD = _delivery.get("method", "bot")
FRONTEND_BASE_URL = _delivery.get("frontend_base_url")
BOT_TOKEN = os.getenv("BOT_API")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
