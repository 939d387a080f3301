from __future__ import annotations

import asyncio

import pytest

from fakes import SERVER, FakeHomeserver, FakeMatrix
from threadbridge.adapters.sessions import AppServiceSessions, BotSessions
from threadbridge.adapters.sqlite_storage import SQLiteStorage
from threadbridge.core.broadcast import Broadcaster
from threadbridge.core.commands import (
    CommandEnvelope,
    RedactComment,
    SendComment,
    UserDeleteComment,
    UserEditComment,
)
from threadbridge.core.config import BridgeConfig
from threadbridge.core.errors import Internal, InvalidInput, NotFound, PermissionDenied
from threadbridge.core.executor import USER_DELETE_REASON, CommandExecutor, matrix_txn_id, run_command_loop
from threadbridge.core.identity import TenantId, fingerprint, ghost_user_id
from threadbridge.core.models import DELETED_AUTHOR, CommentDeleted
from threadbridge.core.protocol import METADATA_KEY
from threadbridge.core.reconciler import EventReconciler
from threadbridge.core.router import RoomRouter

TENANT = TenantId("demo.example")
CONFIG = BridgeConfig(server_name=SERVER, service_localpart="threadbridge", identity_salt="salt")
TOKEN = "guest-token"
FP = fingerprint(None, TOKEN, "salt")
GHOST = ghost_user_id("threadbridge", FP, SERVER)


class Harness:
    def __init__(self, tmp_path, bot_mode: bool = False) -> None:
        self.world = FakeHomeserver()
        self.storage = SQLiteStorage(str(tmp_path / "cache.db"))
        self.storage.init_db()
        primary = FakeMatrix(self.world, CONFIG.service_user_id)
        sessions = BotSessions(primary) if bot_mode else AppServiceSessions(primary, CONFIG.service_localpart)
        router = RoomRouter(primary, CONFIG, self.storage)
        self.broadcaster = Broadcaster()
        self.subscription = self.broadcaster.subscribe(TENANT, "hello")
        self.executor = CommandExecutor(self.storage, router, sessions, CONFIG)
        self.reconciler = EventReconciler(self.storage, router, primary, self.broadcaster, CONFIG)

    def execute(self, command):
        return asyncio.run(self.executor.execute(command))

    def observe(self) -> None:
        """Feed everything the homeserver emitted back through the reconciler."""

        async def run() -> None:
            for event in self.world.drain():
                await self.reconciler.process(event)

        asyncio.run(run())


def _send(content: str = "hi", **overrides) -> SendComment:
    fields = dict(tenant=TENANT, slug="hello", content=content, nickname="Ferris", guest_token=TOKEN)
    fields.update(overrides)
    return SendComment(**fields)


@pytest.fixture
def harness(tmp_path) -> Harness:
    return Harness(tmp_path)


def test_send_posts_as_the_guest_ghost(harness: Harness) -> None:
    event_id = harness.execute(_send(txn_id="t-1"))

    [event] = harness.world.drain()
    assert event.event_id == event_id
    assert event.sender == GHOST
    assert event.content[METADATA_KEY]["author_fingerprint"] == FP
    assert event.content[METADATA_KEY]["txn_id"] == "t-1"
    assert harness.world.registered == [f"threadbridge_{FP}"]
    assert harness.world.profiles[GHOST][0] == "Ferris"
    room_id = harness.world.aliases["#demo.example_hello:example.org"]
    assert harness.storage.get_room_meta(room_id) == (TENANT, "hello")


def test_bot_mode_posts_as_the_service_user(tmp_path) -> None:
    harness = Harness(tmp_path, bot_mode=True)

    harness.execute(_send())

    [event] = harness.world.drain()
    assert event.sender == CONFIG.service_user_id
    assert event.content[METADATA_KEY]["author_name"] == "Ferris"
    assert CONFIG.service_user_id not in harness.world.profiles


def test_send_with_reply_attaches_relation(harness: Harness) -> None:
    harness.execute(_send(reply_to="$parent:example.org"))

    [event] = harness.world.drain()
    assert event.content["m.relates_to"] == {"m.in_reply_to": {"event_id": "$parent:example.org"}}


@pytest.mark.parametrize(
    "command",
    [
        _send(content="   "),
        _send(nickname=""),
        _send(reply_to="not-an-event"),
    ],
)
def test_invalid_sends_are_rejected_before_any_remote_call(harness: Harness, command: SendComment) -> None:
    with pytest.raises(InvalidInput):
        harness.execute(command)
    assert harness.world.create_calls == 0
    assert harness.world.timeline == []


def test_guest_lifecycle(harness: Harness) -> None:
    comment_id = harness.execute(_send())
    harness.observe()

    comments, total = harness.storage.list_comments(TENANT, "hello", 10, 0)
    assert total == 1
    assert comments[0].author_name == "Ferris"
    assert comments[0].is_guest and not comments[0].is_redacted

    harness.execute(UserEditComment(tenant=TENANT, slug="hello", comment_id=comment_id, content="hi there", fingerprint=FP))
    [edit] = harness.world.drain()
    assert edit.sender == GHOST
    asyncio.run(harness.reconciler.process(edit))

    edited = harness.storage.get_comment(comment_id)
    assert edited.id == comment_id
    assert edited.content == "hi there"
    assert edited.updated_at is not None

    intruder = fingerprint(None, "someone-else", "salt")
    with pytest.raises(PermissionDenied):
        harness.execute(UserDeleteComment(tenant=TENANT, slug="hello", comment_id=comment_id, fingerprint=intruder))
    assert harness.world.drain() == []
    assert harness.storage.get_comment(comment_id) == edited

    while harness.subscription.pending():
        harness.subscription.get_nowait()

    harness.execute(RedactComment(tenant=TENANT, slug="hello", comment_id=comment_id, reason="spam"))
    [redaction] = harness.world.drain()
    assert redaction.sender == CONFIG.service_user_id
    asyncio.run(harness.reconciler.process(redaction))
    asyncio.run(harness.reconciler.process(redaction))

    redacted = harness.storage.get_comment(comment_id)
    assert redacted.is_redacted
    assert redacted.content == ""
    assert redacted.author_name == DELETED_AUTHOR
    notifications = [harness.subscription.get_nowait() for _ in range(harness.subscription.pending())]
    assert [type(n) for n in notifications] == [CommentDeleted]


def test_author_can_delete_own_comment(harness: Harness) -> None:
    comment_id = harness.execute(_send())
    harness.observe()

    harness.execute(UserDeleteComment(tenant=TENANT, slug="hello", comment_id=comment_id, fingerprint=FP))

    [redaction] = harness.world.drain()
    assert redaction.redacts == comment_id
    assert redaction.content == {"reason": USER_DELETE_REASON}


def test_missing_or_foreign_comments_are_not_found(harness: Harness) -> None:
    comment_id = harness.execute(_send())
    harness.observe()

    with pytest.raises(NotFound):
        harness.execute(UserEditComment(tenant=TENANT, slug="hello", comment_id="$missing:example.org", content="x", fingerprint=FP))
    with pytest.raises(NotFound):
        harness.execute(UserDeleteComment(tenant=TENANT, slug="other", comment_id=comment_id, fingerprint=FP))


def test_native_comments_cannot_be_claimed_by_fingerprint(harness: Harness) -> None:
    harness.execute(_send())
    harness.observe()
    room_id = harness.world.aliases["#demo.example_hello:example.org"]
    native = harness.world.emit(room_id, "@alice:example.org", {"msgtype": "m.text", "body": "mine"})
    asyncio.run(harness.reconciler.process(native))

    with pytest.raises(PermissionDenied):
        harness.execute(UserEditComment(tenant=TENANT, slug="hello", comment_id=native.event_id, content="x", fingerprint=""))


def test_redact_requires_existing_thread(harness: Harness) -> None:
    with pytest.raises(NotFound):
        harness.execute(RedactComment(tenant=TENANT, slug="hello", comment_id="$x:example.org"))
    with pytest.raises(InvalidInput):
        harness.execute(RedactComment(tenant=TENANT, slug="hello", comment_id="x"))


def test_command_loop_delivers_one_outcome_per_command(harness: Harness) -> None:
    async def scenario() -> str:
        queue: asyncio.Queue = asyncio.Queue()
        stop = asyncio.Event()
        ok = CommandEnvelope(_send())
        bad = CommandEnvelope(_send(content=""))
        await queue.put(ok)
        await queue.put(bad)
        loop_task = asyncio.create_task(run_command_loop(harness.executor, queue, stop))
        result = await ok.reply
        with pytest.raises(InvalidInput):
            await bad.reply
        stop.set()
        await asyncio.wait_for(loop_task, 1)
        return result

    assert asyncio.run(scenario()).startswith("$")


def test_unexpected_errors_become_internal(harness: Harness) -> None:
    async def broken(command):
        raise RuntimeError("boom")

    harness.executor.execute = broken

    async def scenario() -> None:
        envelope = CommandEnvelope(_send())
        await harness.executor.dispatch(envelope)
        await envelope.reply

    with pytest.raises(Internal):
        asyncio.run(scenario())


def test_stale_cached_room_is_replaced_on_send(harness: Harness) -> None:
    first_id = harness.execute(_send())
    harness.observe()
    alias = "#demo.example_hello:example.org"
    stale = harness.world.aliases[alias]
    harness.world.unjoinable.add(stale)

    event_id = harness.execute(_send("still here?", guest_token="second-guest"))

    fresh = harness.world.aliases[alias]
    assert fresh != stale
    [event] = harness.world.drain()
    assert event.event_id == event_id
    assert event.room_id == fresh
    assert harness.storage.get_room_meta(fresh) == (TENANT, "hello")
    assert harness.storage.get_room_meta(stale) is None

    asyncio.run(harness.reconciler.process(event))
    comments, total = harness.storage.list_comments(TENANT, "hello", 10, 0)
    assert total == 2
    assert [c.id for c in comments] == [first_id, event_id]


def test_client_txn_ids_are_scoped_to_author_and_room(harness: Harness) -> None:
    first = harness.execute(_send("one", txn_id="1"))
    other_guest = harness.execute(_send("two", txn_id="1", guest_token="second-guest"))
    retried = harness.execute(_send("one", txn_id="1"))

    assert first != other_guest
    assert retried == first
    assert len(harness.world.drain()) == 2
    assert all(txn != "1" for _, txn in harness.world.sent_txns)


def test_matrix_txn_id_is_only_derived_when_supplied() -> None:
    assert matrix_txn_id(GHOST, "!room:example.org", None) is None
    assert matrix_txn_id(GHOST, "!room:example.org", "1") != matrix_txn_id(GHOST, "!other:example.org", "1")
