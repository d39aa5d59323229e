"""Static configuration for textweet.

User-editable settings live in config.json at the project root; every key is
optional. Secrets and the few values people change most often can also come
from the environment (or .env), which wins over config.json.
"""

import json
import logging
import os

from dotenv import load_dotenv

LOGGER = logging.getLogger(__name__)

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.path.join(PROJECT_ROOT, "config.json")

MIN_POLL_INTERVAL = 1.0


def _load_json_config(path: str) -> dict:
    """Load config.json, treating a missing file as an empty config."""

    if not os.path.exists(path):
        return {}

    with open(path, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _env_number(name: str, default, parse=int):
    """Parse an environment override, falling back to ``default`` with a warning."""

    value = os.getenv(name)
    if not value:
        return default
    try:
        return parse(value.strip())
    except ValueError:
        LOGGER.warning("Ignoring %s=%r: not a valid %s; using %s", name, value, parse.__name__, default)
        return default


def _env_int(name: str, default: int) -> int:
    return _env_number(name, default, int)


def _resolve_path(path: str) -> str:
    """Expand ~ and anchor relative paths at the project root."""

    path = os.path.expanduser(path)
    if not os.path.isabs(path):
        path = os.path.join(PROJECT_ROOT, path)
    return path


def poll_interval_seconds(polling: dict) -> float:
    """Polling interval in seconds, clamped to MIN_POLL_INTERVAL.

    POLL_INTERVAL is in milliseconds for compatibility with existing .env files.
    """

    interval = float(polling.get("interval_seconds", 3))
    env_ms = _env_number("POLL_INTERVAL", None, float)
    if env_ms is not None:
        interval = env_ms / 1000
    if interval < MIN_POLL_INTERVAL:
        LOGGER.warning(
            "Polling interval %.3fs is below %.0fs; using %.0fs to avoid excessive API calls",
            interval,
            MIN_POLL_INTERVAL,
            MIN_POLL_INTERVAL,
        )
        interval = MIN_POLL_INTERVAL
    return interval


def contact_looks_valid(contact: str) -> bool:
    """Messages handles are either an email address or a +E.164 number."""

    return "@" in contact or contact.startswith("+")


load_dotenv()

_CONFIG = _load_json_config(CONFIG_PATH)

# The single contact whose outbound messages get posted.
_source = _CONFIG.get("source", {})
CONTACT = os.getenv("IMESSAGE_CONTACT") or _source.get("contact", "")
CHAT_DB_PATH = os.path.expanduser(_source.get("db_path", "~/Library/Messages/chat.db"))
WINDOW_SIZE = int(_source.get("window_size", 10))

# Publishing limits mirror the X API: 280 characters and 4 images per post.
_publishing = _CONFIG.get("publishing", {})
MAX_TEXT_LENGTH = _env_int("MAX_TWEET_LENGTH", int(_publishing.get("max_text_length", 280)))
MAX_MEDIA = int(_publishing.get("max_media", 4))
UPLOAD_CONCURRENCY = int(_publishing.get("upload_concurrency", 2))

POLL_INTERVAL = poll_interval_seconds(_CONFIG.get("polling", {}))

# Ledger and staging files default to the project root so they survive
# restarts from any working directory.
_state = _CONFIG.get("state", {})
LEDGER_PATH = _resolve_path(_state.get("ledger_path", ".processed-messages.json"))
STAGING_DIR = _resolve_path(_state.get("staging_dir", ".temp-images"))

# Logging configuration; console logging is on unless disabled.
LOGGING = _CONFIG.get(
    "logging",
    {
        "enabled": True,
        "redact": {
            "enabled": True,
            "patterns": [
                "TWITTER_API_KEY",
                "TWITTER_API_SECRET",
                "TWITTER_ACCESS_TOKEN",
                "TWITTER_ACCESS_SECRET",
            ],
        },
    },
)
