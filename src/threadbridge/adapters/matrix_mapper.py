"""Matrix-to-core event mapping adapter.

This keeps client-server and appservice wire details out of the core
reconciler. Both transports deliver the same raw event dicts; sync timeline
events simply lack ``room_id`` and get it from the enclosing room.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Iterator, Optional

from threadbridge.core.models import InboundEvent

LOGGER = logging.getLogger(__name__)


def _redacts_from(raw: dict[str, Any], content: dict[str, Any]) -> Optional[str]:
    # Room versions >= 11 moved ``redacts`` into content; older ones keep it top-level.
    redacts = raw.get("redacts") or content.get("redacts")
    return redacts if isinstance(redacts, str) and redacts else None


def build_event(raw: dict[str, Any], room_id: Optional[str] = None) -> Optional[InboundEvent]:
    """Build a core InboundEvent from a raw Matrix event dict.

    Returns None for events missing the fields every handler relies on.
    """

    if not isinstance(raw, dict):
        LOGGER.debug("Dropping non-object event entry: %r", type(raw).__name__)
        return None

    event_id = raw.get("event_id")
    sender = raw.get("sender")
    event_type = raw.get("type")
    room = raw.get("room_id") or room_id
    if not (isinstance(event_id, str) and isinstance(sender, str) and isinstance(event_type, str) and room):
        LOGGER.debug("Dropping malformed event: %s", raw.get("event_id"))
        return None

    content = raw.get("content")
    if not isinstance(content, dict):
        content = {}

    ts = raw.get("origin_server_ts")
    return InboundEvent(
        room_id=room,
        event_id=event_id,
        sender=sender,
        type=event_type,
        origin_server_ts=int(ts) if isinstance(ts, (int, float)) else 0,
        content=content,
        redacts=_redacts_from(raw, content),
        raw=raw,
    )


def events_from_transaction(payload: dict[str, Any]) -> list[InboundEvent]:
    """Map the ``events`` array of an appservice transaction push."""

    raw_events = payload.get("events")
    if not isinstance(raw_events, list):
        return []
    return [event for event in map(build_event, raw_events) if event is not None]


def _timeline(room: dict[str, Any]) -> Iterable[dict[str, Any]]:
    timeline = room.get("timeline") or {}
    return timeline.get("events") or []


def events_from_sync(payload: dict[str, Any]) -> Iterator[InboundEvent]:
    """Yield timeline events for joined rooms of a /sync response, per-room in order."""

    joined = (payload.get("rooms") or {}).get("join") or {}
    for room_id, room in joined.items():
        for raw in _timeline(room):
            event = build_event(raw, room_id=room_id)
            if event is not None:
                yield event
