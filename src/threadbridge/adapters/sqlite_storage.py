"""SQLite storage adapter.

Implements the core StoragePort (the local comment cache) using a SQLite
database. Every comment write is a single conditional statement, so
concurrent reconciliation tasks and redactions cannot interleave into a
half-applied state.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
import os
import sqlite3
from typing import Iterator, Optional

from threadbridge.core.errors import Internal
from threadbridge.core.identity import TenantId
from threadbridge.core.models import DELETED_AUTHOR, Comment, Profile

RESUME_TOKEN_KEY = "sync_token"
PROFILE_TTL = timedelta(hours=24)

_COMMENT_COLUMNS = """
    c.id, c.author_id, c.author_name, c.author_fingerprint, c.avatar_url,
    c.is_guest, c.content, c.is_redacted, c.reply_to, c.created_at,
    c.updated_at, c.txn_id, r.tenant_id, r.slug
"""


def _to_text(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width keeps text comparison in SQL chronological.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        # Rows were validated on the way in.
        tenant=TenantId(row["tenant_id"]),
        slug=row["slug"],
        author_id=row["author_id"],
        author_name=row["author_name"],
        author_fingerprint=row["author_fingerprint"],
        avatar_url=row["avatar_url"],
        is_guest=bool(row["is_guest"]),
        content=row["content"],
        is_redacted=bool(row["is_redacted"]),
        reply_to=row["reply_to"],
        created_at=_from_text(row["created_at"]),
        updated_at=_from_text(row["updated_at"]),
        txn_id=row["txn_id"],
    )


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str, profile_ttl: timedelta = PROFILE_TTL) -> None:
        self._db_path = db_path
        self._profile_ttl = profile_ttl

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise Internal(f"Local cache error: {exc}") from exc
        finally:
            conn.close()

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - meta: process-wide key/value pairs (the sync resume token)
        - rooms: Matrix room id -> (tenant, slug), one room per thread
        - profiles: display name/avatar cache for native users
        - comments: the comment cache, keyed by Matrix event id
        """

        directory = os.path.dirname(self._db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )
            # A thread maps to exactly one room; a second room for the same
            # (tenant_id, slug) violates the unique constraint on purpose.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rooms (
                    room_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    UNIQUE (tenant_id, slug)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    user_id TEXT PRIMARY KEY,
                    display_name TEXT,
                    avatar_url TEXT,
                    refreshed_at TIMESTAMP NOT NULL
                )
                """
            )
            # comments keeps one row per canonical event id. Edits update the
            # row in place; redactions blank it but keep it so reply trees
            # stay intact.
            # Fields:
            # - id: event id of the original message (never the edit's id)
            # - room_id: owning room, follows room replacement via cascade
            # - author_fingerprint: set only for guest authors
            # - updated_at: set only once an edit has been applied
            # - txn_id: client-generated id for optimistic UI matching
            # - raw_event: serialized source event, for debugging/replay
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS comments (
                    id TEXT PRIMARY KEY,
                    room_id TEXT NOT NULL,
                    author_id TEXT NOT NULL,
                    author_name TEXT NOT NULL,
                    author_fingerprint TEXT,
                    avatar_url TEXT,
                    is_guest INTEGER NOT NULL DEFAULT 0,
                    content TEXT NOT NULL,
                    is_redacted INTEGER NOT NULL DEFAULT 0,
                    reply_to TEXT,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP,
                    txn_id TEXT,
                    raw_event TEXT,
                    FOREIGN KEY (room_id) REFERENCES rooms (room_id) ON UPDATE CASCADE
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_comments_room_created ON comments (room_id, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_comments_txn_id ON comments (txn_id) WHERE txn_id IS NOT NULL"
            )

    @staticmethod
    def _insert_room(conn: sqlite3.Connection, room_id: str, tenant: TenantId, slug: str) -> None:
        try:
            conn.execute(
                """
                INSERT INTO rooms (room_id, tenant_id, slug)
                VALUES (?, ?, ?)
                ON CONFLICT(room_id) DO NOTHING
                """,
                (room_id, tenant.value, slug),
            )
        except sqlite3.IntegrityError as exc:
            raise Internal(f"Thread {tenant}/{slug} is already bound to another room ({room_id} rejected)") from exc

    def ensure_room_mapping(self, room_id: str, tenant: TenantId, slug: str) -> None:
        """Record room -> (tenant, slug) once; repeated calls are no-ops."""

        with self._transaction() as conn:
            self._insert_room(conn, room_id, tenant, slug)

    def replace_room(self, old_room_id: str, new_room_id: str) -> bool:
        """Move a thread (and its comments) from a retired room to its replacement."""

        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE rooms SET room_id = ? WHERE room_id = ?",
                (new_room_id, old_room_id),
            )
            return cur.rowcount > 0

    def room_for_thread(self, tenant: TenantId, slug: str) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT room_id FROM rooms WHERE tenant_id = ? AND slug = ?",
                (tenant.value, slug),
            ).fetchone()
        return row["room_id"] if row else None

    def get_room_meta(self, room_id: str) -> Optional[tuple[TenantId, str]]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT tenant_id, slug FROM rooms WHERE room_id = ?",
                (room_id,),
            ).fetchone()
        return (TenantId(row["tenant_id"]), row["slug"]) if row else None

    def upsert_comment(
        self,
        room_id: str,
        tenant: TenantId,
        slug: str,
        comment: Comment,
        raw_event: Optional[str] = None,
    ) -> bool:
        """Insert a comment or merge it into the existing row.

        Creation fields never change on conflict. A row is only updated when
        it comes from the same author, the incoming version is at least as new
        (an edit never loses to the original or an older edit), the row is not
        redacted, and something visible actually differs. Returns True if a row was written.
        """

        with self._transaction() as conn:
            self._insert_room(conn, room_id, tenant, slug)
            cur = conn.execute(
                """
                INSERT INTO comments (
                    id, room_id, author_id, author_name, author_fingerprint,
                    avatar_url, is_guest, content, is_redacted, reply_to,
                    created_at, updated_at, txn_id, raw_event
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    content = excluded.content,
                    is_redacted = excluded.is_redacted,
                    updated_at = excluded.updated_at,
                    author_name = excluded.author_name,
                    avatar_url = excluded.avatar_url
                WHERE comments.is_redacted = 0
                  AND comments.author_id = excluded.author_id
                  AND (
                        (excluded.updated_at IS NULL AND comments.updated_at IS NULL)
                        OR (
                            excluded.updated_at IS NOT NULL
                            AND (comments.updated_at IS NULL OR excluded.updated_at >= comments.updated_at)
                        )
                  )
                  AND (
                        comments.content IS NOT excluded.content
                        OR comments.author_name IS NOT excluded.author_name
                        OR comments.avatar_url IS NOT excluded.avatar_url
                        OR comments.updated_at IS NOT excluded.updated_at
                  )
                """,
                (
                    comment.id,
                    room_id,
                    comment.author_id,
                    comment.author_name,
                    comment.author_fingerprint,
                    comment.avatar_url,
                    int(comment.is_guest),
                    comment.content,
                    int(comment.is_redacted),
                    comment.reply_to,
                    _to_text(comment.created_at),
                    _to_text(comment.updated_at),
                    comment.txn_id,
                    raw_event,
                ),
            )
            return cur.rowcount > 0

    def get_comment(self, comment_id: str) -> Optional[Comment]:
        with self._transaction() as conn:
            row = conn.execute(
                f"""
                SELECT {_COMMENT_COLUMNS}
                FROM comments c
                JOIN rooms r ON c.room_id = r.room_id
                WHERE c.id = ?
                """,
                (comment_id,),
            ).fetchone()
        return _row_to_comment(row) if row else None

    def delete_comment(self, comment_id: str) -> Optional[tuple[TenantId, str]]:
        """Soft-delete a comment; returns its thread, or None if unknown or already deleted."""

        with self._transaction() as conn:
            cur = conn.execute(
                """
                UPDATE comments
                SET content = '', author_name = ?, is_redacted = 1, avatar_url = NULL
                WHERE id = ? AND is_redacted = 0
                """,
                (DELETED_AUTHOR, comment_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                """
                SELECT r.tenant_id, r.slug
                FROM comments c
                JOIN rooms r ON c.room_id = r.room_id
                WHERE c.id = ?
                """,
                (comment_id,),
            ).fetchone()
        return (TenantId(row["tenant_id"]), row["slug"]) if row else None

    def list_comments(
        self, tenant: TenantId, slug: str, limit: int, offset: int
    ) -> tuple[list[Comment], int]:
        """Return one page of a thread, oldest first, plus the thread's total size."""

        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COMMENT_COLUMNS}
                FROM comments c
                JOIN rooms r ON c.room_id = r.room_id
                WHERE r.tenant_id = ? AND r.slug = ?
                ORDER BY c.created_at ASC, c.id ASC
                LIMIT ? OFFSET ?
                """,
                (tenant.value, slug, limit, offset),
            ).fetchall()
            total = conn.execute(
                """
                SELECT COUNT(*) AS total
                FROM comments c
                JOIN rooms r ON c.room_id = r.room_id
                WHERE r.tenant_id = ? AND r.slug = ?
                """,
                (tenant.value, slug),
            ).fetchone()["total"]
        return [_row_to_comment(row) for row in rows], int(total)

    def get_profile(self, user_id: str) -> Optional[Profile]:
        """Return a cached profile, or None if missing or older than the TTL."""

        threshold = datetime.now(timezone.utc) - self._profile_ttl
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT user_id, display_name, avatar_url, refreshed_at
                FROM profiles
                WHERE user_id = ? AND refreshed_at > ?
                """,
                (user_id, _to_text(threshold)),
            ).fetchone()
        if not row:
            return None
        return Profile(
            user_id=row["user_id"],
            display_name=row["display_name"],
            avatar_url=row["avatar_url"],
            refreshed_at=_from_text(row["refreshed_at"]),
        )

    def put_profile(self, user_id: str, display_name: Optional[str], avatar_url: Optional[str]) -> None:
        now = datetime.now(timezone.utc)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO profiles (user_id, display_name, avatar_url, refreshed_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    avatar_url = excluded.avatar_url,
                    refreshed_at = excluded.refreshed_at
                """,
                (user_id, display_name, avatar_url, _to_text(now)),
            )

    def cleanup_profiles(self) -> int:
        """Delete expired profile entries and return the number removed."""

        cutoff = datetime.now(timezone.utc) - self._profile_ttl
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM profiles WHERE refreshed_at < ?",
                (_to_text(cutoff),),
            )
            return cur.rowcount

    def get_resume_token(self) -> Optional[str]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = ?",
                (RESUME_TOKEN_KEY,),
            ).fetchone()
        return row["value"] if row else None

    def save_resume_token(self, token: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (RESUME_TOKEN_KEY, token),
            )
