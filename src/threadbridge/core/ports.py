"""Ports (interfaces) used by the core.

Ports define the minimal contracts for the local cache, the Matrix
homeserver and the transport drivers so that the core can be reused with
different backends.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from threadbridge.core.commands import CommandEnvelope
from threadbridge.core.identity import TenantId
from threadbridge.core.models import Comment, InboundEvent, Profile


class StoragePort(Protocol):
    """Local cache operations required by the core."""

    def ensure_room_mapping(self, room_id: str, tenant: TenantId, slug: str) -> None:
        ...

    def replace_room(self, old_room_id: str, new_room_id: str) -> bool:
        ...

    def room_for_thread(self, tenant: TenantId, slug: str) -> Optional[str]:
        ...

    def get_room_meta(self, room_id: str) -> Optional[tuple[TenantId, str]]:
        ...

    def upsert_comment(
        self,
        room_id: str,
        tenant: TenantId,
        slug: str,
        comment: Comment,
        raw_event: Optional[str] = None,
    ) -> bool:
        ...

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        ...

    def delete_comment(self, comment_id: str) -> Optional[tuple[TenantId, str]]:
        ...

    def list_comments(
        self, tenant: TenantId, slug: str, limit: int, offset: int
    ) -> tuple[list[Comment], int]:
        ...

    def get_profile(self, user_id: str) -> Optional[Profile]:
        ...

    def put_profile(self, user_id: str, display_name: Optional[str], avatar_url: Optional[str]) -> None:
        ...

    def get_resume_token(self) -> Optional[str]:
        ...

    def save_resume_token(self, token: str) -> None:
        ...


@dataclass(frozen=True)
class SyncBatch:
    """One page of the remote event stream."""

    next_batch: str
    events: list[InboundEvent] = field(default_factory=list)


class MatrixPort(Protocol):
    """Homeserver capabilities the core consumes, bound to one acting identity."""

    user_id: str

    async def resolve_alias(self, alias: str) -> Optional[str]:
        ...

    async def delete_alias(self, alias: str) -> None:
        ...

    async def create_room(
        self,
        alias_localpart: str,
        name: str,
        *,
        is_space: bool = False,
        invite: Optional[list[str]] = None,
        power_users: Optional[dict[str, int]] = None,
    ) -> str:
        ...

    async def join_room(self, room_id: str) -> str:
        ...

    async def add_space_child(self, space_id: str, room_id: str, via: list[str]) -> None:
        ...

    async def get_canonical_alias(self, room_id: str) -> Optional[str]:
        ...

    async def send_message(self, room_id: str, content: dict[str, Any], txn_id: Optional[str] = None) -> str:
        ...

    async def redact(self, room_id: str, event_id: str, reason: Optional[str] = None) -> str:
        ...

    async def get_profile(self, user_id: str) -> tuple[Optional[str], Optional[str]]:
        ...

    async def set_display_name(self, display_name: str) -> None:
        ...

    async def sync(self, since: Optional[str], timeout_ms: int) -> SyncBatch:
        ...


class SessionProvider(Protocol):
    """Hands out clients acting as a given identity, with membership tracking."""

    @property
    def primary(self) -> MatrixPort:
        ...

    async def session_for(self, user_id: str) -> MatrixPort:
        ...

    async def ensure_joined(self, session: MatrixPort, room_id: str) -> None:
        ...


class DriverPort(Protocol):
    """A transport strategy: consume commands, observe events, until stopped."""

    async def run(
        self,
        commands: "asyncio.Queue[CommandEnvelope]",
        stop: asyncio.Event,
    ) -> None:
        ...
