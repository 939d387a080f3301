"""Inbound command surface for an HTTP layer.

``CommentService`` is what route handlers call: it gates guest writes with
the proof-of-work guard, validates identifiers, submits commands to the
driver's queue and awaits their single outcome. Reads go straight to the
local cache; live updates come from the broadcaster.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from typing import Any, Optional

from threadbridge.core.broadcast import Broadcaster, Subscription
from threadbridge.core.commands import (
    CommandEnvelope,
    RedactComment,
    SendComment,
    UserDeleteComment,
    UserEditComment,
    submit,
)
from threadbridge.core.errors import AdmissionRejected, InvalidInput, PermissionDenied
from threadbridge.core.identity import TenantId, fingerprint, validate_slug, validate_tenant_id
from threadbridge.core.models import Comment
from threadbridge.core.ports import StoragePort
from threadbridge.core.pow import PowGuard
from threadbridge.core.room_aliases import looks_like_event_id

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50
DEFAULT_COMMAND_TIMEOUT = 30.0


def _thread(tenant: str, slug: str) -> tuple[TenantId, str]:
    return validate_tenant_id(tenant), validate_slug(slug)


class CommentService:
    def __init__(
        self,
        commands: "asyncio.Queue[CommandEnvelope]",
        storage: StoragePort,
        broadcaster: Broadcaster,
        pow_guard: PowGuard,
        identity_salt: str,
        admin_token: Optional[str] = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self._commands = commands
        self._storage = storage
        self._broadcaster = broadcaster
        self._pow = pow_guard
        self._salt = identity_salt
        self._admin_token = admin_token
        self._timeout = command_timeout

    def issue_challenge(self) -> dict[str, Any]:
        return {"challenge": self._pow.issue_challenge(), "difficulty": self._pow.difficulty}

    def fingerprint_for(self, email: Optional[str], guest_token: str) -> str:
        return fingerprint(email, guest_token, self._salt)

    def authorize_admin(self, token: Optional[str]) -> None:
        if not self._admin_token:
            raise PermissionDenied("Administration is disabled")
        if not token or not hmac.compare_digest(token, self._admin_token):
            raise PermissionDenied("Invalid admin token")

    async def post_comment(
        self,
        tenant: str,
        slug: str,
        content: str,
        nickname: str,
        guest_token: str,
        challenge: str,
        proof: str,
        email: Optional[str] = None,
        reply_to: Optional[str] = None,
        txn_id: Optional[str] = None,
    ) -> Optional[str]:
        """Admit and submit a guest comment; returns the sent event id."""

        tenant_id, slug = _thread(tenant, slug)
        if not guest_token:
            raise InvalidInput("guest_token is required")
        if reply_to is not None and not looks_like_event_id(reply_to):
            raise InvalidInput(f"Invalid reply_to event id: {reply_to!r}")
        # Checked last: a single-use challenge is spent by verification.
        if not self._pow.verify(challenge, proof):
            raise AdmissionRejected("Proof of work rejected")

        command = SendComment(
            tenant=tenant_id,
            slug=slug,
            content=content,
            nickname=nickname,
            guest_token=guest_token,
            email=email,
            reply_to=reply_to,
            txn_id=txn_id,
        )
        return await submit(self._commands, command, self._timeout)

    async def edit_comment(
        self,
        tenant: str,
        slug: str,
        comment_id: str,
        content: str,
        guest_token: str,
        email: Optional[str] = None,
    ) -> Optional[str]:
        tenant_id, slug = _thread(tenant, slug)
        command = UserEditComment(
            tenant=tenant_id,
            slug=slug,
            comment_id=comment_id,
            content=content,
            fingerprint=self.fingerprint_for(email, guest_token),
        )
        return await submit(self._commands, command, self._timeout)

    async def delete_comment(
        self,
        tenant: str,
        slug: str,
        comment_id: str,
        guest_token: str,
        email: Optional[str] = None,
    ) -> Optional[str]:
        tenant_id, slug = _thread(tenant, slug)
        command = UserDeleteComment(
            tenant=tenant_id,
            slug=slug,
            comment_id=comment_id,
            fingerprint=self.fingerprint_for(email, guest_token),
        )
        return await submit(self._commands, command, self._timeout)

    async def redact_comment(
        self,
        admin_token: Optional[str],
        tenant: str,
        slug: str,
        comment_id: str,
        reason: Optional[str] = None,
    ) -> Optional[str]:
        self.authorize_admin(admin_token)
        tenant_id, slug = _thread(tenant, slug)
        command = RedactComment(tenant=tenant_id, slug=slug, comment_id=comment_id, reason=reason)
        LOGGER.info("Admin redaction requested for %s in %s/%s", comment_id, tenant_id, slug)
        return await submit(self._commands, command, self._timeout)

    def list_comments(
        self,
        tenant: str,
        slug: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[Comment], int]:
        tenant_id, slug = _thread(tenant, slug)
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = max(0, int(offset))
        return self._storage.list_comments(tenant_id, slug, limit, offset)

    def subscribe(self, tenant: str, slug: str) -> Subscription:
        tenant_id, slug = _thread(tenant, slug)
        return self._broadcaster.subscribe(tenant_id, slug)
