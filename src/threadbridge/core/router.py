"""Room/space resolution for comment threads (core domain).

Every thread maps to one Matrix room reachable at a well-known alias, and
every tenant to one space grouping its threads. The in-memory caches only
save round trips; a miss always falls back to resolving the alias on the
homeserver, which remains the source of truth.
"""

from __future__ import annotations

import logging
from typing import Optional

from threadbridge.core.config import BridgeConfig
from threadbridge.core.errors import NotFound, RemoteConflict, RemoteError, RemoteTransient
from threadbridge.core.identity import TenantId, ThreadKey
from threadbridge.core.keyed_lock import KeyedLock
from threadbridge.core.ports import MatrixPort, StoragePort
from threadbridge.core.room_aliases import (
    parse_thread_alias,
    space_alias,
    space_alias_localpart,
    thread_alias,
    thread_alias_localpart,
)

LOGGER = logging.getLogger(__name__)

ADMIN_POWER_LEVEL = 100


class RoomRouter:
    """Resolve (tenant, slug) to a room id, creating spaces and rooms on demand."""

    def __init__(
        self,
        matrix: MatrixPort,
        config: BridgeConfig,
        storage: Optional[StoragePort] = None,
    ) -> None:
        self._matrix = matrix
        self._config = config
        self._storage = storage
        self._spaces: dict[TenantId, str] = {}
        self._threads: dict[ThreadKey, str] = {}
        self._locks = KeyedLock()

    def cached_thread(self, tenant: TenantId, slug: str) -> Optional[str]:
        return self._threads.get(ThreadKey(tenant, slug))

    def forget_thread(self, tenant: TenantId, slug: str) -> None:
        self._threads.pop(ThreadKey(tenant, slug), None)

    async def resolve_tenant_container(self, tenant: TenantId) -> str:
        """Return the tenant's space, creating it if no alias resolves."""

        cached = self._spaces.get(tenant)
        if cached:
            return cached

        async with self._locks.hold(("space", tenant)):
            cached = self._spaces.get(tenant)
            if cached:
                return cached

            alias = space_alias(tenant, self._config.server_name)
            room_id, _ = await self._join_existing(alias)
            if room_id is None:
                room_id = await self._create(
                    alias,
                    space_alias_localpart(tenant),
                    name=tenant.value,
                    is_space=True,
                )
                LOGGER.info("Created space %s for tenant %s", room_id, tenant)
            self._spaces[tenant] = room_id
            return room_id

    async def resolve_or_create_thread(self, tenant: TenantId, slug: str) -> str:
        """Return the thread's room, creating and linking it under the space on a miss."""

        key = ThreadKey(tenant, slug)
        cached = self._threads.get(key)
        if cached:
            return cached

        async with self._locks.hold(key):
            cached = self._threads.get(key)
            if cached:
                return cached

            alias = thread_alias(tenant, slug, self._config.server_name)
            room_id, retired = await self._join_existing(alias)
            if room_id is None:
                space_id = await self.resolve_tenant_container(tenant)
                room_id = await self._create(
                    alias,
                    thread_alias_localpart(tenant, slug),
                    name=f"Comments for {slug}",
                )
                await self._link_child(space_id, room_id)
                LOGGER.info("Created room %s for %s", room_id, key)
            self._rebind(tenant, slug, room_id, retired)
            self._threads[key] = room_id
            return room_id

    def _rebind(self, tenant: TenantId, slug: str, room_id: str, retired: Optional[str]) -> None:
        """Point the locally cached thread (and its comments) at ``room_id``."""

        if self._storage is None:
            return
        previous = self._storage.room_for_thread(tenant, slug) or retired
        if previous and previous != room_id and self._storage.replace_room(previous, room_id):
            LOGGER.info("Moved thread %s/%s from %s to %s", tenant, slug, previous, room_id)

    async def lookup_thread(self, tenant: TenantId, slug: str) -> str:
        """Resolve an existing thread room without creating one."""

        key = ThreadKey(tenant, slug)
        cached = self._threads.get(key)
        if cached:
            return cached
        room_id = await self._matrix.resolve_alias(thread_alias(tenant, slug, self._config.server_name))
        if room_id is None:
            raise NotFound(f"No room for thread {key}")
        self._threads[key] = room_id
        return room_id

    async def thread_for_room(self, room_id: str) -> Optional[tuple[TenantId, str]]:
        """Identify a room by its canonical alias, for rooms the cache does not know."""

        try:
            alias = await self._matrix.get_canonical_alias(room_id)
        except NotFound:
            return None
        if not alias:
            return None
        parsed = parse_thread_alias(alias)
        if parsed is None:
            return None
        self._threads.setdefault(ThreadKey(*parsed), room_id)
        return parsed

    async def _join_existing(self, alias: str) -> tuple[Optional[str], Optional[str]]:
        """Resolve and join the room behind ``alias``.

        Returns ``(room_id, None)`` on success. Returns ``(None, retired)`` when
        there is no usable room; ``retired`` is the unjoinable room the alias
        pointed at (None if the alias never resolved), and the caller should
        create a fresh room.
        """

        room_id = await self._matrix.resolve_alias(alias)
        if room_id is None:
            return None, None
        if await self._try_join(room_id, alias):
            return room_id, None

        # The alias may have been repointed meanwhile; re-resolve before giving up.
        retry_id = await self._matrix.resolve_alias(alias)
        if retry_id is None:
            return None, room_id
        if retry_id != room_id and await self._try_join(retry_id, alias):
            return retry_id, None

        LOGGER.warning("Alias %s points at unjoinable room %s; recreating", alias, retry_id)
        try:
            await self._matrix.delete_alias(alias)
        except NotFound:
            pass
        return None, retry_id

    async def _try_join(self, room_id: str, alias: str) -> bool:
        try:
            await self._matrix.join_room(room_id)
        except RemoteTransient:
            raise
        except (RemoteError, NotFound) as exc:
            LOGGER.warning("Join of %s (%s) failed: %s", room_id, alias, exc)
            return False
        return True

    async def _create(self, alias: str, localpart: str, *, name: str, is_space: bool = False) -> str:
        owner = self._config.owner_id
        service = self._config.service_user_id
        power_users = {service: ADMIN_POWER_LEVEL}
        invite: list[str] = []
        if owner and owner != service:
            power_users[owner] = ADMIN_POWER_LEVEL
            invite.append(owner)

        try:
            return await self._matrix.create_room(
                localpart,
                name,
                is_space=is_space,
                invite=invite,
                power_users=power_users,
            )
        except RemoteConflict:
            # Someone else created it first; their room is as good as ours.
            LOGGER.info("Alias %s taken concurrently; adopting existing room", alias)
            room_id = await self._matrix.resolve_alias(alias)
            if room_id is None:
                raise
            await self._matrix.join_room(room_id)
            return room_id

    async def _link_child(self, space_id: str, room_id: str) -> None:
        try:
            await self._matrix.add_space_child(space_id, room_id, [self._config.server_name])
        except (RemoteError, NotFound) as exc:
            LOGGER.warning("Failed to link room %s to space %s: %s", room_id, space_id, exc)
