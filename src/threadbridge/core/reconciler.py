"""Inbound event reconciliation (core domain).

Turns Matrix timeline events into canonical comment rows and notifications.
Delivery is at-least-once and unordered across rooms, so every write here is
an idempotent conditional upsert or a no-op-on-missing-target update:
replaying an event never changes the outcome.

The message path runs in a strict order:
1) Resolve the room to (tenant, slug); unknown rooms are dropped
2) Pick the canonical id (the edit target for replacements); edits by
   anyone but the original author are dropped
3) Extract comment data; service chatter and empty content are dropped
4) Hydrate display name/avatar for native users (best-effort)
5) Upsert into the local cache, then notify subscribers
"""

from __future__ import annotations

import json
import logging
from typing import Optional

from threadbridge.core.broadcast import Broadcaster
from threadbridge.core.config import BridgeConfig
from threadbridge.core.errors import BridgeError
from threadbridge.core.identity import TenantId, is_service_identity
from threadbridge.core.models import (
    MESSAGE_EVENT,
    REDACTION_EVENT,
    Comment,
    CommentDeleted,
    CommentSaved,
    InboundEvent,
)
from threadbridge.core.ports import MatrixPort, StoragePort
from threadbridge.core.protocol import edit_target, extract_comment, replacement_content, reply_target
from threadbridge.core.router import RoomRouter

LOGGER = logging.getLogger(__name__)


class EventReconciler:
    """Applies inbound message and redaction events to the local cache."""

    def __init__(
        self,
        storage: StoragePort,
        router: RoomRouter,
        matrix: MatrixPort,
        broadcaster: Broadcaster,
        config: BridgeConfig,
    ) -> None:
        self._storage = storage
        self._router = router
        self._matrix = matrix
        self._broadcaster = broadcaster
        self._config = config

    async def process(self, event: InboundEvent) -> None:
        """Handle one event, containing any failure to this event alone."""

        try:
            await self.handle(event)
        except Exception:
            LOGGER.exception("Error while reconciling %s in %s", event.event_id, event.room_id)

    async def handle(self, event: InboundEvent) -> None:
        if event.type == MESSAGE_EVENT:
            await self._handle_message(event)
        elif event.type == REDACTION_EVENT:
            await self._handle_redaction(event)

    async def _resolve_room(self, room_id: str) -> Optional[tuple[TenantId, str]]:
        meta = self._storage.get_room_meta(room_id)
        if meta is not None:
            return meta
        meta = await self._router.thread_for_room(room_id)
        if meta is not None:
            self._storage.ensure_room_mapping(room_id, meta[0], meta[1])
        return meta

    async def _handle_message(self, event: InboundEvent) -> None:
        meta = await self._resolve_room(event.room_id)
        if meta is None:
            LOGGER.info("Ignored event %s in unknown room %s", event.event_id, event.room_id)
            return
        tenant, slug = meta

        target = edit_target(event.content)
        if target:
            existing = self._storage.get_comment(target)
            if existing is not None and existing.author_id != event.sender:
                LOGGER.warning("Ignored edit %s of %s by %s: not the author", event.event_id, target, event.sender)
                return
            canonical_id = target
            source = replacement_content(event.content)
            updated_at = event.timestamp
        else:
            canonical_id = event.event_id
            source = event.content
            updated_at = None

        extracted = extract_comment(
            source,
            event.sender,
            self._config.service_user_id,
            self._config.service_localpart,
        )
        if extracted is None:
            LOGGER.debug("Skipped service message %s from %s", event.event_id, event.sender)
            return

        # Media-only or whitespace messages never become comments.
        if not extracted.content.strip():
            return

        author_name = extracted.author_name
        avatar_url = None
        if not extracted.is_guest and not self._is_service(event.sender):
            author_name, avatar_url = await self._hydrate_profile(event.sender, author_name)

        comment = Comment(
            id=canonical_id,
            tenant=tenant,
            slug=slug,
            author_id=event.sender,
            author_name=author_name,
            avatar_url=avatar_url,
            is_guest=extracted.is_guest,
            author_fingerprint=extracted.fingerprint,
            content=extracted.content,
            created_at=event.timestamp,
            updated_at=updated_at,
            reply_to=reply_target(event.content),
            txn_id=extracted.txn_id,
        )

        raw_event = json.dumps(event.raw if event.raw is not None else event.content, ensure_ascii=False)
        changed = self._storage.upsert_comment(event.room_id, tenant, slug, comment, raw_event)
        if not changed:
            LOGGER.debug("Event %s left %s unchanged (replay or stale edit)", event.event_id, canonical_id)
            return

        stored = self._storage.get_comment(canonical_id) or comment
        self._broadcaster.publish(CommentSaved(tenant=tenant, slug=slug, comment=stored))
        LOGGER.info("Comment saved for %s/%s (%s)", tenant, slug, canonical_id)

    async def _handle_redaction(self, event: InboundEvent) -> None:
        target = event.redacts
        if not target:
            return

        existing = self._storage.get_comment(target)
        if existing is None:
            # Unknown target: nothing to undo, and nothing is queued for later.
            return

        meta = self._storage.get_room_meta(event.room_id)
        if meta is not None and meta != (existing.tenant, existing.slug):
            LOGGER.warning("Redaction %s in %s targets a comment from another thread", event.event_id, event.room_id)
            return

        deleted = self._storage.delete_comment(target)
        if deleted is None:
            return
        tenant, slug = deleted
        self._broadcaster.publish(CommentDeleted(tenant=tenant, slug=slug, comment_id=target))
        LOGGER.info("Comment redacted for %s/%s (%s)", tenant, slug, target)

    def _is_service(self, sender: str) -> bool:
        return is_service_identity(sender, self._config.service_user_id, self._config.service_localpart)

    async def _hydrate_profile(self, user_id: str, fallback_name: str) -> tuple[str, Optional[str]]:
        """Display name and avatar from the profile cache, refreshed on a miss."""

        try:
            cached = self._storage.get_profile(user_id)
        except BridgeError:
            LOGGER.warning("Profile cache read failed for %s", user_id, exc_info=True)
            cached = None
        if cached is not None:
            return cached.display_name or fallback_name, cached.avatar_url

        try:
            display_name, avatar_url = await self._matrix.get_profile(user_id)
        except BridgeError as exc:
            LOGGER.warning("Profile fetch failed for %s: %s", user_id, exc)
            return fallback_name, None

        try:
            self._storage.put_profile(user_id, display_name, avatar_url)
        except BridgeError:
            LOGGER.warning("Profile cache write failed for %s", user_id, exc_info=True)
        return display_name or fallback_name, avatar_url
