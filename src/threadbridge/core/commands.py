"""Outbound domain commands and the envelope that carries their reply.

Each command travels with its own single-use reply future, so the awaiting
side needs no correlation table: it waits on the future it created.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Union

from threadbridge.core.errors import CommandTimeout, Internal
from threadbridge.core.identity import TenantId


@dataclass(frozen=True)
class SendComment:
    tenant: TenantId
    slug: str
    content: str
    nickname: str
    guest_token: str
    email: Optional[str] = None
    reply_to: Optional[str] = None
    txn_id: Optional[str] = None


@dataclass(frozen=True)
class RedactComment:
    tenant: TenantId
    slug: str
    comment_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class UserDeleteComment:
    tenant: TenantId
    slug: str
    comment_id: str
    fingerprint: str


@dataclass(frozen=True)
class UserEditComment:
    tenant: TenantId
    slug: str
    comment_id: str
    content: str
    fingerprint: str


Command = Union[SendComment, RedactComment, UserDeleteComment, UserEditComment]


@dataclass
class CommandEnvelope:
    """A command paired with the future its single outcome is delivered to."""

    command: Command
    reply: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    def resolve(self, result: Optional[str] = None) -> None:
        if not self.reply.done():
            self.reply.set_result(result)

    def fail(self, error: BaseException) -> None:
        # A cancelled future means the caller gave up; that is not our error.
        if not self.reply.done():
            self.reply.set_exception(error)


async def submit(
    queue: "asyncio.Queue[CommandEnvelope]",
    command: Command,
    timeout: float,
) -> Optional[str]:
    """Enqueue a command and wait for its outcome.

    Returns the executor's result (the sent event id for SendComment), raises
    the executor's typed failure, or raises CommandTimeout if no outcome
    arrives in time.
    """

    envelope = CommandEnvelope(command)
    try:
        await asyncio.wait_for(queue.put(envelope), timeout)
    except asyncio.TimeoutError as exc:
        raise Internal("Command queue is full") from exc
    try:
        return await asyncio.wait_for(envelope.reply, timeout)
    except asyncio.TimeoutError as exc:
        raise CommandTimeout(f"No reply for {type(command).__name__} within {timeout}s") from exc
