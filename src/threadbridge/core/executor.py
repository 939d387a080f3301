"""Outbound command execution (core domain).

Commands arrive from the web-facing surface, are authorized here, and become
Matrix operations performed under the right identity: guests post through
their ghost, edits come from the original author, moderation redactions come
from the primary service user. The resulting events are observed later by
the reconciler like any other event; nothing here writes comments directly.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
from typing import Optional

from threadbridge.core.commands import (
    Command,
    CommandEnvelope,
    RedactComment,
    SendComment,
    UserDeleteComment,
    UserEditComment,
)
from threadbridge.core.config import BridgeConfig
from threadbridge.core.errors import (
    BridgeError,
    Internal,
    InvalidInput,
    NotFound,
    PermissionDenied,
    RemoteError,
    RemoteTransient,
)
from threadbridge.core.identity import TenantId, fingerprint, ghost_user_id
from threadbridge.core.models import Comment
from threadbridge.core.ports import MatrixPort, SessionProvider, StoragePort
from threadbridge.core.protocol import build_comment_content, build_edit_content
from threadbridge.core.room_aliases import looks_like_event_id
from threadbridge.core.router import RoomRouter

LOGGER = logging.getLogger(__name__)

USER_DELETE_REASON = "Deleted by author"

# Expected outcomes are logged without a traceback.
_CALLER_ERRORS = (InvalidInput, PermissionDenied, NotFound)


def matrix_txn_id(author_id: str, room_id: str, txn_id: Optional[str]) -> Optional[str]:
    """Homeserver transaction id for a client-supplied ``txn_id``.

    Homeservers deduplicate sends per access token, which every ghost shares,
    so the raw client value would collide across authors and rooms.
    """

    if not txn_id:
        return None
    payload = "\0".join((author_id, room_id, txn_id))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CommandExecutor:
    """Authorizes commands and performs the corresponding Matrix operation."""

    def __init__(
        self,
        storage: StoragePort,
        router: RoomRouter,
        sessions: SessionProvider,
        config: BridgeConfig,
    ) -> None:
        self._storage = storage
        self._router = router
        self._sessions = sessions
        self._config = config

    async def dispatch(self, envelope: CommandEnvelope) -> None:
        """Run one command and deliver exactly one outcome to its reply future."""

        name = type(envelope.command).__name__
        try:
            result = await self.execute(envelope.command)
        except _CALLER_ERRORS as exc:
            LOGGER.info("%s rejected: %s", name, exc)
            envelope.fail(exc)
        except BridgeError as exc:
            LOGGER.exception("%s failed", name)
            envelope.fail(exc)
        except Exception as exc:
            LOGGER.exception("%s failed unexpectedly", name)
            envelope.fail(Internal(f"{name} failed: {exc}"))
        else:
            envelope.resolve(result)

    async def execute(self, command: Command) -> Optional[str]:
        if isinstance(command, SendComment):
            return await self.send_comment(command)
        if isinstance(command, RedactComment):
            return await self.redact_comment(command)
        if isinstance(command, UserDeleteComment):
            return await self.user_delete_comment(command)
        if isinstance(command, UserEditComment):
            return await self.user_edit_comment(command)
        raise InvalidInput(f"Unsupported command: {type(command).__name__}")

    async def send_comment(self, command: SendComment) -> str:
        """Post a guest comment through the guest's ghost; returns the event id."""

        if not command.content.strip():
            raise InvalidInput("Comment content is empty")
        if not command.nickname.strip():
            raise InvalidInput("Nickname is required")
        if command.reply_to is not None and not looks_like_event_id(command.reply_to):
            raise InvalidInput(f"Invalid reply_to event id: {command.reply_to!r}")

        room_id = await self._router.resolve_or_create_thread(command.tenant, command.slug)
        self._storage.ensure_room_mapping(room_id, command.tenant, command.slug)

        author_fp = fingerprint(command.email, command.guest_token, self._config.identity_salt)
        ghost_id = ghost_user_id(self._config.service_localpart, author_fp, self._config.server_name)

        session = await self._sessions.session_for(ghost_id)

        if session.user_id != self._config.service_user_id:
            try:
                await session.set_display_name(command.nickname)
            except BridgeError as exc:
                LOGGER.warning("Could not set display name for %s: %s", ghost_id, exc)

        content = build_comment_content(
            command.nickname,
            command.content,
            author_fp,
            txn_id=command.txn_id,
            reply_to=command.reply_to,
        )
        event_id = await self._post(
            session, command.tenant, command.slug, room_id, content, ghost_id, command.txn_id
        )
        LOGGER.info("Sent comment %s as %s (%s)", event_id, session.user_id, command.nickname)
        return event_id

    async def _post(
        self,
        session: MatrixPort,
        tenant: TenantId,
        slug: str,
        room_id: str,
        content: dict,
        author_id: str,
        txn_id: Optional[str] = None,
    ) -> str:
        """Join and send; a thread room that rejects us is re-resolved once."""

        try:
            await self._sessions.ensure_joined(session, room_id)
            return await session.send_message(room_id, content, txn_id=matrix_txn_id(author_id, room_id, txn_id))
        except RemoteTransient:
            raise
        except (RemoteError, NotFound) as exc:
            LOGGER.warning("Room %s for %s/%s rejected the send (%s); re-resolving", room_id, tenant, slug, exc)
            self._router.forget_thread(tenant, slug)
            fresh_id = await self._router.resolve_or_create_thread(tenant, slug)
            if fresh_id == room_id:
                raise

        self._storage.ensure_room_mapping(fresh_id, tenant, slug)
        await self._sessions.ensure_joined(session, fresh_id)
        return await session.send_message(fresh_id, content, txn_id=matrix_txn_id(author_id, fresh_id, txn_id))

    async def redact_comment(self, command: RedactComment) -> str:
        """Moderator redaction under the primary service identity."""

        if not looks_like_event_id(command.comment_id):
            raise InvalidInput(f"Invalid comment id: {command.comment_id!r}")
        room_id = await self._router.lookup_thread(command.tenant, command.slug)
        redaction_id = await self._sessions.primary.redact(room_id, command.comment_id, command.reason)
        LOGGER.info("Redacted %s in %s/%s", command.comment_id, command.tenant, command.slug)
        return redaction_id

    async def user_delete_comment(self, command: UserDeleteComment) -> str:
        self._authorize_author(command.comment_id, command.tenant.value, command.slug, command.fingerprint)
        return await self.redact_comment(
            RedactComment(
                tenant=command.tenant,
                slug=command.slug,
                comment_id=command.comment_id,
                reason=USER_DELETE_REASON,
            )
        )

    async def user_edit_comment(self, command: UserEditComment) -> str:
        """Replace a guest's comment, sent as the original author."""

        if not command.content.strip():
            raise InvalidInput("Comment content is empty")
        existing = self._authorize_author(command.comment_id, command.tenant.value, command.slug, command.fingerprint)

        room_id = await self._router.lookup_thread(command.tenant, command.slug)
        session = await self._sessions.session_for(existing.author_id)

        content = build_edit_content(
            existing.id,
            command.content,
            existing.author_name,
            existing.is_guest,
            existing.author_fingerprint,
        )
        event_id = await self._post(session, command.tenant, command.slug, room_id, content, existing.author_id)
        LOGGER.info("Edited %s via %s", existing.id, event_id)
        return event_id

    def _authorize_author(self, comment_id: str, tenant: str, slug: str, supplied_fp: str) -> Comment:
        existing = self._storage.get_comment(comment_id)
        if existing is None or existing.is_redacted:
            raise NotFound(f"Comment {comment_id} not found")
        if existing.tenant.value != tenant or existing.slug != slug:
            raise NotFound(f"Comment {comment_id} not found in {tenant}/{slug}")
        stored_fp = existing.author_fingerprint or ""
        if not stored_fp or not hmac.compare_digest(stored_fp, supplied_fp or ""):
            raise PermissionDenied("Comment belongs to another author")
        return existing


async def run_command_loop(
    executor: CommandExecutor,
    commands: "asyncio.Queue[CommandEnvelope]",
    stop: asyncio.Event,
) -> None:
    """Drain the command queue one envelope at a time until ``stop`` is set."""

    stop_waiter = asyncio.ensure_future(stop.wait())
    try:
        while not stop.is_set():
            getter = asyncio.ensure_future(commands.get())
            done, _ = await asyncio.wait({getter, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            await executor.dispatch(getter.result())
    finally:
        stop_waiter.cancel()
    LOGGER.info("Command loop stopped")
