"""Static configuration for threadbridge.

All user-editable settings (homeserver, transport mode, database, polling,
proof-of-work, logging) live in a single JSON file. Secrets never do: they
come from the environment (see client.py).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

# THREADBRIDGE_CONFIG points at an alternative file, e.g. one per deployment.
CONFIG_PATH = os.getenv("THREADBRIDGE_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    return path if os.path.isabs(path) else os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Transport and identity.
# - MODE: "bot" polls /sync with a user token, "appservice" receives pushes
# - SERVICE_LOCALPART: the service user; ghosts are "<localpart>_<fingerprint>"
# - OWNER_ID: optional user invited to and promoted in every created room
_matrix = _CONFIG.get("matrix", {})
MODE = _matrix.get("mode", "bot")
HOMESERVER_URL = _matrix.get("homeserver_url", "http://localhost:8008")
SERVER_NAME = _matrix.get("server_name", "localhost")
SERVICE_LOCALPART = _matrix.get("service_localpart", "threadbridge")
OWNER_ID = _matrix.get("owner_id")
LISTEN_HOST = _matrix.get("listen_host", "127.0.0.1")
LISTEN_PORT = int(_matrix.get("listen_port", 9000))
# Only used by `threadbridge register`.
APPSERVICE_ID = _matrix.get("appservice_id", "threadbridge")
APPSERVICE_URL = _matrix.get("appservice_url", f"http://{LISTEN_HOST}:{LISTEN_PORT}")

# Where to store the SQLite database.
_database = _CONFIG.get("database", {})
DB_PATH = _resolve_path(_database.get("path", "threadbridge.db"))

# Pull driver polling; the grace period also bounds push-driver draining.
_sync = _CONFIG.get("sync", {})
SYNC_POLL_TIMEOUT_MS = int(_sync.get("poll_timeout_ms", 30_000))
SYNC_RETRY_INTERVAL_SECS = float(_sync.get("retry_interval_secs", 5))
SHUTDOWN_GRACE_SECS = float(_sync.get("shutdown_grace_secs", 10))

# Command queue between the web-facing surface and the driver.
_commands = _CONFIG.get("commands", {})
COMMAND_QUEUE_SIZE = int(_commands.get("queue_size", 100))
COMMAND_TIMEOUT_SECS = float(_commands.get("timeout_secs", 30))

# Proof-of-work admission for guest comments.
_pow = _CONFIG.get("pow", {})
POW_DIFFICULTY = int(_pow.get("difficulty", 4))
POW_MAX_AGE_SECS = int(_pow.get("max_age_secs", 300))
POW_FUTURE_SKEW_SECS = int(_pow.get("future_skew_secs", 30))
POW_SINGLE_USE = bool(_pow.get("single_use", True))

# Per-subscriber buffer before the oldest notifications are dropped.
_broadcast = _CONFIG.get("broadcast", {})
BROADCAST_QUEUE_SIZE = int(_broadcast.get("subscriber_queue_size", 100))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
