"""Pull transport: long-poll /sync as the service account.

Two loops share one stop event:
- the command loop executes queued commands against the homeserver
- the sync loop polls for events, reconciles them and persists the resume
  token only after the whole batch has been applied

A token that cannot be persisted is not advanced in memory either, so the
next poll re-fetches the same batch (replays are idempotent).
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
import logging
from typing import Awaitable, Optional, TypeVar

from threadbridge.core.commands import CommandEnvelope
from threadbridge.core.config import SyncConfig
from threadbridge.core.errors import BridgeError
from threadbridge.core.executor import CommandExecutor, run_command_loop
from threadbridge.core.models import InboundEvent
from threadbridge.core.ports import MatrixPort, StoragePort, SyncBatch
from threadbridge.core.reconciler import EventReconciler

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


async def until_stopped(awaitable: Awaitable[T], stop: asyncio.Event) -> Optional[T]:
    """Await ``awaitable`` unless ``stop`` fires first; returns None when stopped."""

    task = asyncio.ensure_future(awaitable)
    stop_waiter = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait({task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_waiter.cancel()
    if task in done:
        return task.result()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    return None


def group_by_room(events: list[InboundEvent]) -> "OrderedDict[str, list[InboundEvent]]":
    """Split a batch per room, keeping each room's events in delivery order."""

    grouped: "OrderedDict[str, list[InboundEvent]]" = OrderedDict()
    for event in events:
        grouped.setdefault(event.room_id, []).append(event)
    return grouped


class SyncDriver:
    """Poll-based driver for bot deployments."""

    def __init__(
        self,
        client: MatrixPort,
        storage: StoragePort,
        reconciler: EventReconciler,
        executor: CommandExecutor,
        config: SyncConfig,
    ) -> None:
        self._client = client
        self._storage = storage
        self._reconciler = reconciler
        self._executor = executor
        self._config = config

    async def run(self, commands: "asyncio.Queue[CommandEnvelope]", stop: asyncio.Event) -> None:
        LOGGER.info("Starting sync driver as %s", self._client.user_id)
        command_task = asyncio.create_task(run_command_loop(self._executor, commands, stop))
        try:
            await self.sync_loop(stop)
        finally:
            stop.set()
            try:
                await asyncio.wait_for(command_task, timeout=self._config.shutdown_grace_secs)
            except asyncio.TimeoutError:
                LOGGER.warning("Command loop did not finish within %.1fs", self._config.shutdown_grace_secs)
        LOGGER.info("Sync driver stopped")

    async def sync_loop(self, stop: asyncio.Event) -> None:
        token = self._storage.get_resume_token()
        if token:
            LOGGER.info("Resuming sync from token %s", token)

        while not stop.is_set():
            try:
                batch = await until_stopped(
                    self._client.sync(token, self._config.poll_timeout_ms),
                    stop,
                )
            except BridgeError as exc:
                LOGGER.error("Matrix sync failed: %s. Retrying in %.1fs", exc, self._config.retry_interval_secs)
                await until_stopped(asyncio.sleep(self._config.retry_interval_secs), stop)
                continue
            if batch is None:
                break

            await self.apply_batch(batch)

            if batch.next_batch == token:
                continue
            try:
                self._storage.save_resume_token(batch.next_batch)
            except BridgeError:
                LOGGER.critical("Failed to save sync token %s; batch will be replayed", batch.next_batch, exc_info=True)
                continue
            token = batch.next_batch

    async def apply_batch(self, batch: SyncBatch) -> None:
        """Reconcile a batch: rooms concurrently, each room's events in order."""

        if not batch.events:
            return
        grouped = group_by_room(batch.events)
        await asyncio.gather(*(self._apply_room(events) for events in grouped.values()))
        LOGGER.debug("Applied %d events across %d rooms", len(batch.events), len(grouped))

    async def _apply_room(self, events: list[InboundEvent]) -> None:
        for event in events:
            await self._reconciler.process(event)
