"""Push transport: the homeserver delivers events to an appservice endpoint.

The transaction handler only authenticates, deduplicates and schedules;
reconciliation runs in background tasks so the homeserver gets its
acknowledgement without waiting on the local cache or profile lookups.
Events of one room are applied in arrival order, rooms run concurrently.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request

from threadbridge.adapters.matrix_mapper import events_from_transaction
from threadbridge.core.commands import CommandEnvelope
from threadbridge.core.config import SyncConfig
from threadbridge.core.executor import CommandExecutor, run_command_loop
from threadbridge.core.keyed_lock import KeyedLock
from threadbridge.core.models import InboundEvent
from threadbridge.core.reconciler import EventReconciler

LOGGER = logging.getLogger(__name__)

RECENT_TXN_LIMIT = 1024


class AppServiceDriver:
    """Event intake for appservice deployments plus the shared command loop."""

    def __init__(
        self,
        reconciler: EventReconciler,
        executor: CommandExecutor,
        hs_token: str,
        config: SyncConfig,
        recent_txn_limit: int = RECENT_TXN_LIMIT,
    ) -> None:
        self._reconciler = reconciler
        self._executor = executor
        self._hs_token = hs_token
        self._config = config
        self._recent_limit = recent_txn_limit
        self._recent: "OrderedDict[str, None]" = OrderedDict()
        self._tasks: set[asyncio.Task] = set()
        self._room_locks = KeyedLock()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def authorize(self, authorization: Optional[str], access_token: Optional[str]) -> None:
        """Check the homeserver token from the header or the legacy query parameter."""

        token = access_token
        if authorization and authorization.lower().startswith("bearer "):
            token = authorization[7:].strip()
        if not token:
            raise HTTPException(401, "Missing homeserver token")
        if not hmac.compare_digest(token, self._hs_token):
            LOGGER.warning("Rejected transaction with invalid homeserver token")
            raise HTTPException(403, "Invalid homeserver token")

    def accept_transaction(self, txn_id: str, payload: dict[str, Any]) -> int:
        """Schedule a transaction's events; returns how many were scheduled.

        A transaction id seen recently is acknowledged again without work.
        """

        if txn_id in self._recent:
            self._recent.move_to_end(txn_id)
            LOGGER.debug("Transaction %s already processed", txn_id)
            return 0

        events = events_from_transaction(payload)
        for event in events:
            self._schedule(event)

        self._recent[txn_id] = None
        while len(self._recent) > self._recent_limit:
            self._recent.popitem(last=False)
        LOGGER.debug("Transaction %s: %d events scheduled", txn_id, len(events))
        return len(events)

    def _schedule(self, event: InboundEvent) -> None:
        task = asyncio.create_task(self._process(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, event: InboundEvent) -> None:
        async with self._room_locks.hold(event.room_id):
            await self._reconciler.process(event)

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight reconciliation tasks, cancelling stragglers after ``timeout``."""

        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("Cancelled %d reconciliation tasks after %.1fs", len(pending), timeout)

    async def run(self, commands: "asyncio.Queue[CommandEnvelope]", stop: asyncio.Event) -> None:
        LOGGER.info("Starting appservice driver")
        try:
            await run_command_loop(self._executor, commands, stop)
        finally:
            await self.drain(self._config.shutdown_grace_secs)
        LOGGER.info("Appservice driver stopped")


def build_router(driver: AppServiceDriver) -> APIRouter:
    """Transaction routes, current and legacy paths."""

    router = APIRouter()

    async def handle_transaction(
        txn_id: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        access_token: Optional[str] = Query(default=None),
    ) -> dict:
        driver.authorize(authorization, access_token)
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(400, "Transaction body is not JSON")
        if not isinstance(payload, dict):
            raise HTTPException(400, "Transaction body must be an object")
        driver.accept_transaction(txn_id, payload)
        return {}

    router.add_api_route("/_matrix/app/v1/transactions/{txn_id}", handle_transaction, methods=["PUT"])
    router.add_api_route("/transactions/{txn_id}", handle_transaction, methods=["PUT"])
    return router


def create_app(driver: AppServiceDriver, **kwargs: Any) -> FastAPI:
    app = FastAPI(title="threadbridge appservice", **kwargs)
    app.include_router(build_router(driver))
    return app
