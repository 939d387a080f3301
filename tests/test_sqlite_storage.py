from __future__ import annotations

from datetime import datetime, timedelta, timezone
import sqlite3

import pytest

from threadbridge.adapters.sqlite_storage import SQLiteStorage
from threadbridge.core.errors import Internal
from threadbridge.core.identity import TenantId
from threadbridge.core.models import DELETED_AUTHOR, Comment

TENANT = TenantId("demo.example")
ROOM = "!room:example.org"
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage(tmp_path) -> SQLiteStorage:
    store = SQLiteStorage(str(tmp_path / "cache" / "threadbridge.db"))
    store.init_db()
    return store


def _comment(comment_id: str = "$1", **overrides) -> Comment:
    fields = dict(
        id=comment_id,
        tenant=TENANT,
        slug="hello",
        author_id="@threadbridge_fp:example.org",
        author_name="Ferris",
        content="hi",
        created_at=T0,
        is_guest=True,
        author_fingerprint="fp",
    )
    fields.update(overrides)
    return Comment(**fields)


def test_init_db_is_idempotent_and_uses_wal(storage: SQLiteStorage, tmp_path) -> None:
    storage.init_db()

    with sqlite3.connect(str(tmp_path / "cache" / "threadbridge.db")) as conn:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    assert mode.lower() == "wal"


def test_room_mapping_is_write_once(storage: SQLiteStorage) -> None:
    storage.ensure_room_mapping(ROOM, TENANT, "hello")
    storage.ensure_room_mapping(ROOM, TENANT, "hello")

    assert storage.get_room_meta(ROOM) == (TENANT, "hello")
    assert storage.get_room_meta("!other:example.org") is None


def test_second_room_for_same_thread_fails_loudly(storage: SQLiteStorage) -> None:
    storage.ensure_room_mapping(ROOM, TENANT, "hello")

    with pytest.raises(Internal):
        storage.ensure_room_mapping("!other:example.org", TENANT, "hello")


def test_room_for_thread_finds_the_bound_room(storage: SQLiteStorage) -> None:
    storage.ensure_room_mapping(ROOM, TENANT, "hello")

    assert storage.room_for_thread(TENANT, "hello") == ROOM
    assert storage.room_for_thread(TENANT, "other") is None


def test_replace_room_moves_the_thread_and_its_comments(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment())

    assert storage.replace_room(ROOM, "!new:example.org")
    assert storage.get_room_meta("!new:example.org") == (TENANT, "hello")
    assert storage.get_room_meta(ROOM) is None
    comments, total = storage.list_comments(TENANT, "hello", 10, 0)
    assert total == 1 and comments[0].id == "$1"
    assert not storage.replace_room("!missing:example.org", "!x:example.org")


def test_upsert_inserts_then_ignores_identical_replay(storage: SQLiteStorage) -> None:
    assert storage.upsert_comment(ROOM, TENANT, "hello", _comment(), raw_event='{"event_id": "$1"}')
    assert not storage.upsert_comment(ROOM, TENANT, "hello", _comment())

    stored = storage.get_comment("$1")
    assert stored == _comment()


def test_creation_fields_are_immutable_on_conflict(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    edited = _comment(
        content="hi there",
        created_at=T0 + timedelta(minutes=5),
        updated_at=T0 + timedelta(minutes=5),
        txn_id="late",
    )

    assert storage.upsert_comment(ROOM, TENANT, "hello", edited)

    stored = storage.get_comment("$1")
    assert stored.content == "hi there"
    assert stored.updated_at == T0 + timedelta(minutes=5)
    assert stored.created_at == T0
    assert stored.txn_id is None


def test_other_authors_cannot_overwrite_a_comment(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    hijack = _comment(
        content="pwned",
        author_id="@mallory:example.org",
        author_name="mallory",
        updated_at=T0 + timedelta(minutes=5),
    )

    assert not storage.upsert_comment(ROOM, TENANT, "hello", hijack)
    assert storage.get_comment("$1") == _comment()


def test_original_replay_does_not_undo_an_edit(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    storage.upsert_comment(ROOM, TENANT, "hello", _comment(content="v2", updated_at=T0 + timedelta(minutes=2)))

    assert not storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    assert not storage.upsert_comment(ROOM, TENANT, "hello", _comment(content="v1.5", updated_at=T0 + timedelta(minutes=1)))
    assert storage.get_comment("$1").content == "v2"


def test_delete_soft_deletes_once(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment(avatar_url="mxc://example.org/a"))

    assert storage.delete_comment("$1") == (TENANT, "hello")
    assert storage.delete_comment("$1") is None
    assert storage.delete_comment("$unknown") is None

    stored = storage.get_comment("$1")
    assert stored.is_redacted
    assert stored.content == ""
    assert stored.author_name == DELETED_AUTHOR
    assert stored.avatar_url is None
    assert stored.created_at == T0


def test_redacted_comment_is_never_resurrected(storage: SQLiteStorage) -> None:
    storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    storage.delete_comment("$1")

    assert not storage.upsert_comment(ROOM, TENANT, "hello", _comment())
    assert not storage.upsert_comment(ROOM, TENANT, "hello", _comment(content="edit", updated_at=T0 + timedelta(hours=1)))
    assert storage.get_comment("$1").is_redacted


def test_list_comments_pages_oldest_first(storage: SQLiteStorage) -> None:
    for n in range(5):
        storage.upsert_comment(ROOM, TENANT, "hello", _comment(f"${n}", created_at=T0 + timedelta(minutes=n)))
    storage.upsert_comment("!elsewhere:example.org", TENANT, "other", _comment("$x"))

    page, total = storage.list_comments(TENANT, "hello", limit=2, offset=1)

    assert total == 5
    assert [c.id for c in page] == ["$1", "$2"]
    assert storage.list_comments(TENANT, "missing", 10, 0) == ([], 0)


def test_profiles_expire_after_ttl(tmp_path) -> None:
    store = SQLiteStorage(str(tmp_path / "p.db"), profile_ttl=timedelta(seconds=-1))
    store.init_db()
    store.put_profile("@alice:example.org", "Alice", None)

    assert store.get_profile("@alice:example.org") is None
    assert store.cleanup_profiles() == 1


def test_profiles_round_trip(storage: SQLiteStorage) -> None:
    storage.put_profile("@alice:example.org", "Alice", "mxc://example.org/a")
    storage.put_profile("@alice:example.org", "Alice B.", None)

    profile = storage.get_profile("@alice:example.org")
    assert profile.display_name == "Alice B."
    assert profile.avatar_url is None
    assert storage.cleanup_profiles() == 0


def test_resume_token_round_trip(storage: SQLiteStorage) -> None:
    assert storage.get_resume_token() is None

    storage.save_resume_token("s1")
    storage.save_resume_token("s2")

    assert storage.get_resume_token() == "s2"
