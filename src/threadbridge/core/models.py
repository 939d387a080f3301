"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from threadbridge.core.errors import InvalidInput
from threadbridge.core.identity import TenantId

DELETED_AUTHOR = "[Deleted]"

MESSAGE_EVENT = "m.room.message"
REDACTION_EVENT = "m.room.redaction"


@dataclass(frozen=True)
class Comment:
    """Canonical comment record, keyed by the Matrix event id of the original post."""

    id: str
    tenant: TenantId
    slug: str
    author_id: str
    author_name: str
    content: str
    created_at: datetime
    is_guest: bool = False
    author_fingerprint: Optional[str] = None
    avatar_url: Optional[str] = None
    is_redacted: bool = False
    reply_to: Optional[str] = None
    updated_at: Optional[datetime] = None
    txn_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.is_guest != (self.author_fingerprint is not None):
            raise InvalidInput("Guest comments must carry a fingerprint, others must not")
        if self.is_redacted and (self.content or self.author_name != DELETED_AUTHOR):
            raise InvalidInput("Redacted comments must have empty content and the deletion sentinel")

    def as_dict(self) -> dict[str, Any]:
        """JSON-ready representation used by subscribers and the HTTP layer."""

        return {
            "id": self.id,
            "site_id": self.tenant.value,
            "post_slug": self.slug,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "author_fingerprint": self.author_fingerprint,
            "avatar_url": self.avatar_url,
            "is_guest": self.is_guest,
            "content": self.content,
            "is_redacted": self.is_redacted,
            "reply_to": self.reply_to,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "txn_id": self.txn_id,
        }


@dataclass(frozen=True)
class Profile:
    """Cached display data for a native (non-guest) Matrix user."""

    user_id: str
    display_name: Optional[str]
    avatar_url: Optional[str]
    refreshed_at: datetime


@dataclass(frozen=True)
class InboundEvent:
    """Minimal Matrix timeline event used by the reconciler."""

    room_id: str
    event_id: str
    sender: str
    type: str
    origin_server_ts: int
    content: dict[str, Any] = field(default_factory=dict)
    redacts: Optional[str] = None
    raw: Optional[dict[str, Any]] = None

    @property
    def timestamp(self) -> datetime:
        return datetime.fromtimestamp(self.origin_server_ts / 1000, tz=timezone.utc)


@dataclass(frozen=True)
class CommentSaved:
    tenant: TenantId
    slug: str
    comment: Comment

    @property
    def kind(self) -> str:
        return "update_comment" if self.comment.updated_at else "new_comment"


@dataclass(frozen=True)
class CommentDeleted:
    tenant: TenantId
    slug: str
    comment_id: str

    @property
    def kind(self) -> str:
        return "delete_comment"


Notification = Union[CommentSaved, CommentDeleted]
