from __future__ import annotations

import asyncio

import pytest

from threadbridge.core.commands import CommandEnvelope, RedactComment, submit
from threadbridge.core.errors import CommandTimeout, Internal, NotFound
from threadbridge.core.identity import TenantId

COMMAND = RedactComment(tenant=TenantId("demo.example"), slug="hello", comment_id="$1")


async def _answer(queue: "asyncio.Queue[CommandEnvelope]", outcome) -> None:
    envelope = await queue.get()
    if isinstance(outcome, BaseException):
        envelope.fail(outcome)
    else:
        envelope.resolve(outcome)


def test_submit_returns_the_executor_result() -> None:
    async def scenario() -> str:
        queue: asyncio.Queue = asyncio.Queue()
        responder = asyncio.create_task(_answer(queue, "$redaction"))
        result = await submit(queue, COMMAND, timeout=1)
        await responder
        return result

    assert asyncio.run(scenario()) == "$redaction"


def test_submit_raises_the_typed_failure() -> None:
    async def scenario() -> None:
        queue: asyncio.Queue = asyncio.Queue()
        responder = asyncio.create_task(_answer(queue, NotFound("gone")))
        try:
            await submit(queue, COMMAND, timeout=1)
        finally:
            await responder

    with pytest.raises(NotFound):
        asyncio.run(scenario())


def test_missing_reply_is_a_timeout_not_a_failure() -> None:
    async def scenario() -> None:
        queue: asyncio.Queue = asyncio.Queue()
        await submit(queue, COMMAND, timeout=0.05)

    with pytest.raises(CommandTimeout):
        asyncio.run(scenario())


def test_full_queue_is_reported() -> None:
    async def scenario() -> None:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        queue.put_nowait(object())
        await submit(queue, COMMAND, timeout=0.05)

    with pytest.raises(Internal):
        asyncio.run(scenario())


def test_late_outcome_after_caller_gave_up_is_ignored() -> None:
    async def scenario() -> None:
        envelope = CommandEnvelope(COMMAND)
        envelope.reply.cancel()
        envelope.resolve("$late")
        envelope.fail(NotFound("late"))
        assert envelope.reply.cancelled()

    asyncio.run(scenario())
