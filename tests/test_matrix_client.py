from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from threadbridge.adapters.matrix_client import MatrixClient
from threadbridge.core.errors import NotFound, RemoteConflict, RemoteError, RemoteTransient

HOMESERVER = "https://matrix.example.org"
SERVICE = "@threadbridge:example.org"


class Recorder:
    """httpx transport handler that answers from a fixed (status, body) reply."""

    def __init__(self, status: int = 200, body=None) -> None:
        self.status = status
        self.body = {} if body is None else body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def _client(handler, user_id: str = SERVICE) -> MatrixClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=HOMESERVER)
    return MatrixClient(HOMESERVER, "as-token", user_id, http=http)


def _call(coro):
    return asyncio.run(coro)


def test_send_message_uses_txn_id_in_path() -> None:
    handler = Recorder(body={"event_id": "$sent"})
    client = _client(handler)

    event_id = _call(client.send_message("!room:example.org", {"body": "hi"}, txn_id="t-1"))

    assert event_id == "$sent"
    [request] = handler.requests
    assert request.method == "PUT"
    assert request.url.path == "/_matrix/client/v3/rooms/!room:example.org/send/m.room.message/t-1"
    assert json.loads(request.content) == {"body": "hi"}
    assert "user_id" not in request.url.params


def test_masquerading_view_adds_user_id_param() -> None:
    handler = Recorder(body={"room_id": "!room:example.org"})
    ghost = _client(handler).as_user("@threadbridge_abc:example.org")

    _call(ghost.join_room("!room:example.org"))

    assert handler.requests[0].url.params["user_id"] == "@threadbridge_abc:example.org"
    assert ghost.user_id == "@threadbridge_abc:example.org"


@pytest.mark.parametrize(
    ("status", "body", "error"),
    [
        (429, {"errcode": "M_LIMIT_EXCEEDED"}, RemoteTransient),
        (502, {}, RemoteTransient),
        (404, {"errcode": "M_NOT_FOUND"}, NotFound),
        (400, {"errcode": "M_ROOM_IN_USE", "error": "Room alias already taken"}, RemoteConflict),
        (403, {"errcode": "M_FORBIDDEN"}, RemoteError),
    ],
)
def test_http_failures_map_to_typed_errors(status: int, body: dict, error: type) -> None:
    client = _client(Recorder(status, body))

    with pytest.raises(error) as info:
        _call(client.create_room("demo_hello", "Comments for hello"))
    if error is not NotFound:
        assert info.value.status == status


def test_forbidden_is_not_transient() -> None:
    client = _client(Recorder(403, {"errcode": "M_FORBIDDEN"}))

    with pytest.raises(RemoteError) as info:
        _call(client.join_room("!room:example.org"))
    assert not isinstance(info.value, RemoteTransient)
    assert info.value.errcode == "M_FORBIDDEN"


def test_network_failure_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(RemoteTransient):
        _call(_client(handler).get_profile("@alice:example.org"))


def test_resolve_alias_returns_none_when_unknown() -> None:
    assert _call(_client(Recorder(404, {"errcode": "M_NOT_FOUND"})).resolve_alias("#x:example.org")) is None

    handler = Recorder(body={"room_id": "!room:example.org", "servers": ["example.org"]})
    assert _call(_client(handler).resolve_alias("#demo_hello:example.org")) == "!room:example.org"
    assert handler.requests[0].url.path == "/_matrix/client/v3/directory/room/#demo_hello:example.org"


def test_create_space_sends_creation_content_and_power_levels() -> None:
    handler = Recorder(body={"room_id": "!space:example.org"})

    room_id = _call(
        _client(handler).create_room(
            "_space_demo",
            "demo",
            is_space=True,
            invite=["@admin:example.org"],
            power_users={SERVICE: 100},
        )
    )

    assert room_id == "!space:example.org"
    body = json.loads(handler.requests[0].content)
    assert body["room_alias_name"] == "_space_demo"
    assert body["creation_content"] == {"type": "m.space"}
    assert body["invite"] == ["@admin:example.org"]
    assert body["power_level_content_override"] == {"users": {SERVICE: 100}}


def test_register_treats_existing_user_as_success() -> None:
    handler = Recorder(400, {"errcode": "M_USER_IN_USE", "error": "User ID already taken"})

    _call(_client(handler).register_user("threadbridge_abc"))

    body = json.loads(handler.requests[0].content)
    assert body == {"type": "m.login.application_service", "username": "threadbridge_abc"}


def test_register_propagates_other_failures() -> None:
    with pytest.raises(RemoteError):
        _call(_client(Recorder(400, {"errcode": "M_EXCLUSIVE"})).register_user("someone"))


def test_sync_maps_joined_timelines() -> None:
    handler = Recorder(
        body={
            "next_batch": "s2",
            "rooms": {
                "join": {
                    "!room:example.org": {
                        "timeline": {
                            "events": [
                                {
                                    "event_id": "$1",
                                    "sender": "@alice:example.org",
                                    "type": "m.room.message",
                                    "origin_server_ts": 1,
                                    "content": {"body": "hi"},
                                }
                            ]
                        }
                    }
                }
            },
        }
    )

    batch = _call(_client(handler).sync("s1", 1000))

    assert batch.next_batch == "s2"
    assert [(e.room_id, e.event_id) for e in batch.events] == [("!room:example.org", "$1")]
    params = handler.requests[0].url.params
    assert params["since"] == "s1"
    assert params["timeout"] == "1000"
    assert "m.room.redaction" in params["filter"]


def test_sync_without_next_batch_is_an_error() -> None:
    with pytest.raises(RemoteError):
        _call(_client(Recorder(body={})).sync(None, 0))
