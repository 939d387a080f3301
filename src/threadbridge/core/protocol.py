"""Comment payload format carried inside Matrix message events.

Outbound messages carry a namespaced, self-describing block next to a
human-readable fallback body, so ordinary Matrix clients still render
something sensible. Inbound extraction prefers the structured block and only
falls back to parsing the text convention when it is missing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from threadbridge.core.identity import fingerprint_from_ghost, is_service_identity

METADATA_KEY = "com.threadbridge.v1"
GUEST_MARKER = " (Guest): "
EDIT_PREFIX = "* "


@dataclass(frozen=True)
class ExtractedComment:
    author_name: str
    is_guest: bool
    content: str
    fingerprint: Optional[str] = None
    txn_id: Optional[str] = None


def build_comment_content(
    nickname: str,
    content: str,
    fingerprint: Optional[str],
    txn_id: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> dict[str, Any]:
    """Message content for a new guest comment."""

    payload: dict[str, Any] = {
        "msgtype": "m.text",
        "body": f"**{nickname}**{GUEST_MARKER}{content}",
        METADATA_KEY: {
            "author_name": nickname,
            "is_guest": True,
            "origin_content": content,
            "author_fingerprint": fingerprint,
            "txn_id": txn_id,
        },
    }
    if reply_to:
        payload["m.relates_to"] = {"m.in_reply_to": {"event_id": reply_to}}
    return payload


def build_edit_content(
    original_id: str,
    content: str,
    author_name: str,
    is_guest: bool,
    fingerprint: Optional[str],
) -> dict[str, Any]:
    """Message content replacing ``original_id`` (an ``m.replace`` relation).

    The replacement carries the full structured block so the edited comment
    keeps its author name and guest fingerprint when reconciled.
    """

    new_content: dict[str, Any] = {
        "msgtype": "m.text",
        "body": content,
        METADATA_KEY: {
            "author_name": author_name,
            "is_guest": is_guest,
            "origin_content": content,
            "author_fingerprint": fingerprint,
            "txn_id": None,
        },
    }
    return {
        "msgtype": "m.text",
        "body": f"{EDIT_PREFIX}{content}",
        "m.new_content": new_content,
        "m.relates_to": {"rel_type": "m.replace", "event_id": original_id},
    }


def edit_target(content: dict[str, Any]) -> Optional[str]:
    """Event id this message replaces, if it is an edit."""

    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        return None
    if relates_to.get("rel_type") != "m.replace":
        return None
    event_id = relates_to.get("event_id")
    return event_id if isinstance(event_id, str) and event_id else None


def reply_target(content: dict[str, Any]) -> Optional[str]:
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        return None
    in_reply_to = relates_to.get("m.in_reply_to")
    if not isinstance(in_reply_to, dict):
        return None
    event_id = in_reply_to.get("event_id")
    return event_id if isinstance(event_id, str) and event_id else None


def replacement_content(content: dict[str, Any]) -> dict[str, Any]:
    """The content an edit should be reconciled from."""

    new_content = content.get("m.new_content")
    if isinstance(new_content, dict):
        return new_content
    # Clients that omit m.new_content still prefix the fallback body.
    body = content.get("body")
    if isinstance(body, str) and body.startswith(EDIT_PREFIX):
        return {**content, "body": body[len(EDIT_PREFIX):]}
    return content


def _from_metadata(block: Any) -> Optional[ExtractedComment]:
    if not isinstance(block, dict):
        return None
    author_name = block.get("author_name")
    is_guest = block.get("is_guest")
    origin_content = block.get("origin_content")
    if not isinstance(author_name, str) or not isinstance(is_guest, bool) or not isinstance(origin_content, str):
        return None
    fingerprint = block.get("author_fingerprint")
    txn_id = block.get("txn_id")
    return ExtractedComment(
        author_name=author_name,
        is_guest=is_guest,
        content=origin_content,
        fingerprint=fingerprint if isinstance(fingerprint, str) and fingerprint else None,
        txn_id=txn_id if isinstance(txn_id, str) and txn_id else None,
    )


def _from_text_convention(body: str) -> Optional[tuple[str, str]]:
    """Parse ``**name** (Guest): text`` into (name, text)."""

    head, sep, text = body.partition(GUEST_MARKER)
    if not sep:
        return None
    name = head.strip()
    if name.startswith("**") and name.endswith("**") and len(name) > 4:
        name = name[2:-2]
    if not name:
        return None
    return name, text


def extract_comment(
    content: dict[str, Any],
    sender: str,
    service_user_id: str,
    service_localpart: str,
) -> Optional[ExtractedComment]:
    """Return comment data for a message, or None for a service message to skip.

    Messages from foreign users are taken at face value (sender id as name,
    plain body as content); display names are hydrated later. The guest flag
    is normalized so that it is set exactly when a fingerprint is known; a
    ghost sender's fingerprint is recovered from its user id.
    """

    from_service = is_service_identity(sender, service_user_id, service_localpart)
    # Only our own identities may claim guest authorship.
    extracted = _from_metadata(content.get(METADATA_KEY)) if from_service else None
    ghost_fp = fingerprint_from_ghost(sender, service_localpart)
    body = content.get("body")
    body = body if isinstance(body, str) else ""

    if extracted is None:
        if not from_service:
            return ExtractedComment(author_name=sender, is_guest=False, content=body)
        parsed = _from_text_convention(body)
        if parsed is None:
            return None
        name, text = parsed
        extracted = ExtractedComment(author_name=name, is_guest=True, content=text)

    fingerprint = extracted.fingerprint
    if extracted.is_guest and fingerprint is None:
        fingerprint = ghost_fp
    is_guest = extracted.is_guest and fingerprint is not None
    return ExtractedComment(
        author_name=extracted.author_name,
        is_guest=is_guest,
        content=extracted.content,
        fingerprint=fingerprint if is_guest else None,
        txn_id=extracted.txn_id,
    )
