"""Session providers: which Matrix identity performs an operation.

Bot mode has a single real account, so every "ghost" request falls back to
the primary session and the guest is represented only in message metadata.
Appservice mode masquerades as registered ghost users sharing the primary
client's connection pool.
"""

from __future__ import annotations

import asyncio
import logging

from threadbridge.adapters.matrix_client import MatrixClient
from threadbridge.core.errors import RemoteError
from threadbridge.core.identity import is_service_identity

LOGGER = logging.getLogger(__name__)


class BotSessions:
    """Single-identity provider used by the sync (pull) driver."""

    def __init__(self, client: MatrixClient) -> None:
        self._client = client
        self._joined: set[str] = set()

    @property
    def primary(self) -> MatrixClient:
        return self._client

    async def session_for(self, user_id: str) -> MatrixClient:
        return self._client

    async def ensure_joined(self, session: MatrixClient, room_id: str) -> None:
        if room_id in self._joined:
            return
        await session.join_room(room_id)
        self._joined.add(room_id)


class AppServiceSessions:
    """Masquerading provider used by the appservice (push) driver.

    Ghosts are registered lazily on first use. Registration and membership
    are remembered in memory; both are idempotent on the homeserver, so a
    restart only costs a few redundant requests.
    """

    def __init__(self, client: MatrixClient, service_localpart: str) -> None:
        self._client = client
        self._service_localpart = service_localpart
        self._registered: set[str] = set()
        self._joined: set[tuple[str, str]] = set()
        self._lock = asyncio.Lock()

    @property
    def primary(self) -> MatrixClient:
        return self._client

    async def session_for(self, user_id: str) -> MatrixClient:
        if user_id == self._client.user_id:
            return self._client
        if not is_service_identity(user_id, self._client.user_id, self._service_localpart):
            # Only users inside our namespace can be masqueraded.
            raise RemoteError(f"Cannot act as {user_id}: outside the service namespace")

        if user_id not in self._registered:
            async with self._lock:
                if user_id not in self._registered:
                    localpart = user_id[1:].split(":", 1)[0]
                    await self._client.register_user(localpart)
                    self._registered.add(user_id)
        return self._client.as_user(user_id)

    async def ensure_joined(self, session: MatrixClient, room_id: str) -> None:
        key = (session.user_id, room_id)
        if key in self._joined:
            return
        await session.join_room(room_id)
        self._joined.add(key)
        LOGGER.debug("%s joined %s", session.user_id, room_id)
