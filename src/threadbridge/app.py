"""Application entry point for the threadbridge comment bridge."""

from __future__ import annotations

import argparse
import asyncio
from contextlib import asynccontextmanager
import json
import logging
from logging.handlers import RotatingFileHandler
import os
import re
import secrets
import signal
from typing import Optional

from art import tprint
from dotenv import load_dotenv
import uvicorn

from threadbridge import settings
from threadbridge.adapters.appservice_driver import create_app
from threadbridge.adapters.sqlite_storage import SQLiteStorage
from threadbridge.bridge import Bridge, build_bridge
from threadbridge.client import SECRET_ENV_NAMES, build_client, optional_secret, require_secret
from threadbridge.core.config import BridgeConfig, PowConfig, SyncConfig
from threadbridge.core.pow import PowGuard, solve
from threadbridge.core.room_aliases import SPACE_PREFIX

NAME = "THREADBRIDGE"
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


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", True):
        return []
    values = []
    for name in redact_cfg.get("patterns", SECRET_ENV_NAMES):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", True):
        return

    load_dotenv()
    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    secrets_to_mask = _collect_redaction_values(config)
    formatter = _RedactingFormatter(secrets_to_mask, fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/threadbridge.log")
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

    # httpx logs every request at INFO, which includes masquerade user ids.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    logging.basicConfig(level=level, handlers=handlers)


def _bridge_config() -> BridgeConfig:
    return BridgeConfig(
        server_name=settings.SERVER_NAME,
        service_localpart=settings.SERVICE_LOCALPART,
        identity_salt=require_secret("IDENTITY_SALT"),
        owner_id=settings.OWNER_ID,
    )


def _pow_config() -> PowConfig:
    return PowConfig(
        secret=require_secret("POW_SECRET"),
        difficulty=settings.POW_DIFFICULTY,
        max_age_secs=settings.POW_MAX_AGE_SECS,
        future_skew_secs=settings.POW_FUTURE_SKEW_SECS,
        single_use=settings.POW_SINGLE_USE,
    )


def _build() -> Bridge:
    logger = logging.getLogger(__name__)

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    removed = storage.cleanup_profiles()
    logger.info("Profile cleanup removed %s expired entries", removed)

    config = _bridge_config()
    client = build_client(settings.MODE, settings.HOMESERVER_URL, config.service_user_id)
    return build_bridge(
        mode=settings.MODE,
        storage=storage,
        client=client,
        config=config,
        pow_config=_pow_config(),
        sync_config=SyncConfig(
            poll_timeout_ms=settings.SYNC_POLL_TIMEOUT_MS,
            retry_interval_secs=settings.SYNC_RETRY_INTERVAL_SECS,
            shutdown_grace_secs=settings.SHUTDOWN_GRACE_SECS,
        ),
        hs_token=optional_secret("MATRIX_HS_TOKEN"),
        admin_token=optional_secret("ADMIN_TOKEN"),
        queue_size=settings.COMMAND_QUEUE_SIZE,
        command_timeout=settings.COMMAND_TIMEOUT_SECS,
        subscriber_queue_size=settings.BROADCAST_QUEUE_SIZE,
    )


async def _run_pull(bridge: Bridge) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run().
            pass
    await bridge.run(stop)


def _run_push(bridge: Bridge) -> None:
    @asynccontextmanager
    async def lifespan(app):
        stop = asyncio.Event()
        task = asyncio.create_task(bridge.run(stop))
        app.state.comments = bridge.service
        yield
        stop.set()
        await task

    app = create_app(bridge.driver, lifespan=lifespan)
    # log_config=None keeps the handlers configured above.
    uvicorn.run(app, host=settings.LISTEN_HOST, port=settings.LISTEN_PORT, log_config=None)


def _run() -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)

    logger.info("Starting threadbridge (%s mode)", settings.MODE)
    bridge = _build()

    if settings.MODE == "appservice":
        logger.info("Listening for transactions on %s:%s", settings.LISTEN_HOST, settings.LISTEN_PORT)
        _run_push(bridge)
    else:
        asyncio.run(_run_pull(bridge))
    logger.info("threadbridge stopped")


def registration_document(as_token: str, hs_token: str) -> dict:
    """Appservice registration covering the service user, its ghosts and thread aliases."""

    server = re.escape(settings.SERVER_NAME)
    localpart = re.escape(settings.SERVICE_LOCALPART)
    return {
        "id": settings.APPSERVICE_ID,
        "url": settings.APPSERVICE_URL,
        "as_token": as_token,
        "hs_token": hs_token,
        "sender_localpart": settings.SERVICE_LOCALPART,
        "rate_limited": False,
        "namespaces": {
            "users": [{"exclusive": True, "regex": f"@{localpart}_.*:{server}"}],
            "aliases": [
                {"exclusive": True, "regex": f"#[a-z0-9.\\-]+_.+:{server}"},
                {"exclusive": True, "regex": f"#{re.escape(SPACE_PREFIX)}.+:{server}"},
            ],
            "rooms": [],
        },
    }


def _register() -> None:
    load_dotenv()
    as_token = os.getenv("MATRIX_AS_TOKEN") or secrets.token_hex(32)
    hs_token = os.getenv("MATRIX_HS_TOKEN") or secrets.token_hex(32)
    print(json.dumps(registration_document(as_token, hs_token), indent=2))


def _challenge() -> None:
    guard = PowGuard(_pow_config())
    challenge = guard.issue_challenge()
    proof = solve(challenge, guard.difficulty)
    print(json.dumps({"challenge": challenge, "difficulty": guard.difficulty, "proof": proof}, indent=2))


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="threadbridge")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Start the bridge")
    subparsers.add_parser(
        "register",
        help="Print an appservice registration document for the homeserver.",
    )
    subparsers.add_parser("challenge", help="Issue and solve one proof-of-work challenge")

    args = parser.parse_args(argv)
    if args.command == "register":
        _register()
        return
    if args.command == "challenge":
        _challenge()
        return
    _run()


if __name__ == "__main__":
    main()
