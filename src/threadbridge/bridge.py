"""Component wiring.

Builds the shared router, cache, broadcaster and command queue once and
hands them to the selected transport driver. An embedding web application
takes ``Bridge.service`` for its routes and runs ``Bridge.run`` alongside.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Optional, Union

from threadbridge.adapters.appservice_driver import AppServiceDriver
from threadbridge.adapters.matrix_client import MatrixClient
from threadbridge.adapters.sessions import AppServiceSessions, BotSessions
from threadbridge.adapters.sqlite_storage import SQLiteStorage
from threadbridge.adapters.sync_driver import SyncDriver
from threadbridge.core.broadcast import Broadcaster
from threadbridge.core.commands import CommandEnvelope
from threadbridge.core.config import BridgeConfig, PowConfig, SyncConfig
from threadbridge.core.executor import CommandExecutor
from threadbridge.core.pow import PowGuard
from threadbridge.core.reconciler import EventReconciler
from threadbridge.core.router import RoomRouter
from threadbridge.service import CommentService

LOGGER = logging.getLogger(__name__)


@dataclass
class Bridge:
    storage: SQLiteStorage
    client: MatrixClient
    broadcaster: Broadcaster
    commands: "asyncio.Queue[CommandEnvelope]"
    service: CommentService
    driver: Union[SyncDriver, AppServiceDriver]

    async def run(self, stop: asyncio.Event) -> None:
        try:
            await self.driver.run(self.commands, stop)
        finally:
            await self.client.aclose()


def build_bridge(
    *,
    mode: str,
    storage: SQLiteStorage,
    client: MatrixClient,
    config: BridgeConfig,
    pow_config: PowConfig,
    sync_config: SyncConfig,
    hs_token: Optional[str] = None,
    admin_token: Optional[str] = None,
    queue_size: int = 100,
    command_timeout: float = 30.0,
    subscriber_queue_size: int = 100,
) -> Bridge:
    """Assemble the core around one primary client and one transport."""

    if mode == "appservice":
        if not hs_token:
            raise RuntimeError("MATRIX_HS_TOKEN is required in appservice mode")
        sessions = AppServiceSessions(client, config.service_localpart)
    elif mode == "bot":
        sessions = BotSessions(client)
    else:
        raise RuntimeError("matrix.mode must be 'bot' or 'appservice'")

    broadcaster = Broadcaster(subscriber_queue_size)
    router = RoomRouter(client, config, storage)
    reconciler = EventReconciler(storage, router, client, broadcaster, config)
    executor = CommandExecutor(storage, router, sessions, config)
    commands: "asyncio.Queue[CommandEnvelope]" = asyncio.Queue(maxsize=queue_size)

    if mode == "appservice":
        driver: Union[SyncDriver, AppServiceDriver] = AppServiceDriver(reconciler, executor, hs_token, sync_config)
    else:
        driver = SyncDriver(client, storage, reconciler, executor, sync_config)

    service = CommentService(
        commands,
        storage,
        broadcaster,
        PowGuard(pow_config),
        config.identity_salt,
        admin_token=admin_token,
        command_timeout=command_timeout,
    )
    LOGGER.info("Bridge assembled in %s mode as %s", mode, config.service_user_id)
    return Bridge(
        storage=storage,
        client=client,
        broadcaster=broadcaster,
        commands=commands,
        service=service,
        driver=driver,
    )
