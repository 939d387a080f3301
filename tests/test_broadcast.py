from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from threadbridge.core.broadcast import Broadcaster
from threadbridge.core.identity import TenantId
from threadbridge.core.models import Comment, CommentDeleted, CommentSaved

TENANT = TenantId("demo.example")


def _saved(comment_id: str, slug: str = "hello") -> CommentSaved:
    comment = Comment(
        id=comment_id,
        tenant=TENANT,
        slug=slug,
        author_id="@alice:example.org",
        author_name="Alice",
        content="hi",
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    return CommentSaved(tenant=TENANT, slug=slug, comment=comment)


def test_subscribers_only_receive_their_thread() -> None:
    async def scenario() -> None:
        broadcaster = Broadcaster()
        hello = broadcaster.subscribe(TENANT, "hello")
        other = broadcaster.subscribe(TENANT, "other")
        everything = broadcaster.subscribe()

        delivered = broadcaster.publish(_saved("$1"))

        assert delivered == 2
        assert (await hello.get()).comment.id == "$1"
        assert other.pending() == 0
        assert everything.pending() == 1

    asyncio.run(scenario())


def test_slow_subscriber_loses_oldest_and_counts_lag() -> None:
    async def scenario() -> None:
        broadcaster = Broadcaster(subscriber_queue_size=2)
        slow = broadcaster.subscribe()

        for n in range(5):
            broadcaster.publish(_saved(f"${n}"))

        assert slow.lagged == 3
        assert [slow.get_nowait().comment.id for _ in range(2)] == ["$3", "$4"]

    asyncio.run(scenario())


def test_closed_subscription_stops_receiving() -> None:
    async def scenario() -> None:
        broadcaster = Broadcaster()
        subscription = broadcaster.subscribe()
        subscription.close()

        assert broadcaster.subscriber_count == 0
        assert broadcaster.publish(CommentDeleted(tenant=TENANT, slug="hello", comment_id="$1")) == 0

    asyncio.run(scenario())


def test_notification_kinds() -> None:
    saved = _saved("$1")

    assert saved.kind == "new_comment"
    assert CommentDeleted(tenant=TENANT, slug="hello", comment_id="$1").kind == "delete_comment"
