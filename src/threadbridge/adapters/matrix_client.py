"""Matrix client-server API adapter (httpx).

One ``MatrixClient`` holds the HTTP connection pool and the access token.
``as_user`` returns a lightweight view of the same client that masquerades as
another user via the appservice ``user_id`` query parameter, so ghost
sessions share one pool instead of opening their own.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.parse import quote
import uuid

import httpx

from threadbridge.adapters.matrix_mapper import events_from_sync
from threadbridge.core.errors import NotFound, RemoteConflict, RemoteError, RemoteTransient
from threadbridge.core.ports import SyncBatch

LOGGER = logging.getLogger(__name__)

API_PREFIX = "/_matrix/client/v3"
DEFAULT_TIMEOUT = 30.0
ROOM_IN_USE = "M_ROOM_IN_USE"
USER_IN_USE = "M_USER_IN_USE"

# Only timeline events the reconciler understands are requested from /sync.
SYNC_FILTER = json.dumps(
    {
        "presence": {"types": []},
        "account_data": {"types": []},
        "room": {
            "state": {"lazy_load_members": True},
            "timeline": {"types": ["m.room.message", "m.room.redaction"]},
            "ephemeral": {"types": []},
            "account_data": {"types": []},
        },
    },
    separators=(",", ":"),
)


def _path(value: str) -> str:
    return quote(value, safe="")


def _errcode(response: httpx.Response) -> tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]
    if not isinstance(body, dict):
        return None, response.text[:200]
    return body.get("errcode"), body.get("error") or response.reason_phrase


class MatrixClient:
    """Async client-server API client bound to one acting identity."""

    def __init__(
        self,
        homeserver_url: str,
        access_token: str,
        user_id: str,
        *,
        http: Optional[httpx.AsyncClient] = None,
        masquerade: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.user_id = user_id
        self._homeserver_url = homeserver_url.rstrip("/")
        self._access_token = access_token
        self._masquerade = masquerade
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=self._homeserver_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    def as_user(self, user_id: str) -> "MatrixClient":
        """Return a view of this client acting as ``user_id`` (appservice only)."""

        return MatrixClient(
            self._homeserver_url,
            self._access_token,
            user_id,
            http=self._http,
            masquerade=True,
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        query = dict(params or {})
        if self._masquerade:
            query["user_id"] = self.user_id
        kwargs: dict[str, Any] = {"params": query}
        if body is not None:
            kwargs["json"] = body
        if timeout is not None:
            kwargs["timeout"] = timeout

        try:
            response = await self._http.request(method, f"{API_PREFIX}{path}", **kwargs)
        except httpx.TimeoutException as exc:
            raise RemoteTransient(f"{method} {path} timed out") from exc
        except httpx.TransportError as exc:
            raise RemoteTransient(f"{method} {path} failed: {exc}") from exc

        if response.is_success:
            if not response.content:
                return {}
            try:
                data = response.json()
            except ValueError as exc:
                raise RemoteError(f"{method} {path} returned invalid JSON", status=response.status_code) from exc
            return data if isinstance(data, dict) else {}

        errcode, message = _errcode(response)
        status = response.status_code
        if status == 429 or status >= 500:
            raise RemoteTransient(f"{method} {path}: {status} {message}", errcode=errcode, status=status)
        if status == 404:
            raise NotFound(f"{method} {path}: {message}")
        if errcode in (ROOM_IN_USE, USER_IN_USE):
            raise RemoteConflict(f"{method} {path}: {message}", errcode=errcode, status=status)
        raise RemoteError(f"{method} {path}: {status} {message}", errcode=errcode, status=status)

    async def resolve_alias(self, alias: str) -> Optional[str]:
        try:
            data = await self._request("GET", f"/directory/room/{_path(alias)}")
        except NotFound:
            return None
        return data.get("room_id")

    async def delete_alias(self, alias: str) -> None:
        await self._request("DELETE", f"/directory/room/{_path(alias)}")
        LOGGER.info("Deleted alias %s", alias)

    async def create_room(
        self,
        alias_localpart: str,
        name: str,
        *,
        is_space: bool = False,
        invite: Optional[list[str]] = None,
        power_users: Optional[dict[str, int]] = None,
    ) -> str:
        body: dict[str, Any] = {
            "room_alias_name": alias_localpart,
            "name": name,
            "preset": "public_chat",
            "visibility": "private",
        }
        if is_space:
            body["creation_content"] = {"type": "m.space"}
        if invite:
            body["invite"] = invite
        if power_users:
            body["power_level_content_override"] = {"users": power_users}
        data = await self._request("POST", "/createRoom", body=body)
        room_id = data.get("room_id")
        if not room_id:
            raise RemoteError("createRoom returned no room_id")
        return room_id

    async def join_room(self, room_id: str) -> str:
        data = await self._request("POST", f"/join/{_path(room_id)}", body={})
        return data.get("room_id", room_id)

    async def add_space_child(self, space_id: str, room_id: str, via: list[str]) -> None:
        await self._request(
            "PUT",
            f"/rooms/{_path(space_id)}/state/m.space.child/{_path(room_id)}",
            body={"via": via},
        )

    async def get_canonical_alias(self, room_id: str) -> Optional[str]:
        data = await self._request("GET", f"/rooms/{_path(room_id)}/state/m.room.canonical_alias")
        alias = data.get("alias")
        return alias if isinstance(alias, str) else None

    async def send_message(self, room_id: str, content: dict[str, Any], txn_id: Optional[str] = None) -> str:
        # A caller-supplied txn id makes retries idempotent on the homeserver.
        txn = txn_id or uuid.uuid4().hex
        data = await self._request(
            "PUT",
            f"/rooms/{_path(room_id)}/send/m.room.message/{_path(txn)}",
            body=content,
        )
        event_id = data.get("event_id")
        if not event_id:
            raise RemoteError("send returned no event_id")
        return event_id

    async def redact(self, room_id: str, event_id: str, reason: Optional[str] = None) -> str:
        body = {"reason": reason} if reason else {}
        data = await self._request(
            "PUT",
            f"/rooms/{_path(room_id)}/redact/{_path(event_id)}/{uuid.uuid4().hex}",
            body=body,
        )
        return data.get("event_id", "")

    async def get_profile(self, user_id: str) -> tuple[Optional[str], Optional[str]]:
        data = await self._request("GET", f"/profile/{_path(user_id)}")
        return data.get("displayname"), data.get("avatar_url")

    async def set_display_name(self, display_name: str) -> None:
        await self._request(
            "PUT",
            f"/profile/{_path(self.user_id)}/displayname",
            body={"displayname": display_name},
        )

    async def register_user(self, localpart: str) -> None:
        """Register an appservice user; an existing account counts as success."""

        try:
            await self._request(
                "POST",
                "/register",
                body={"type": "m.login.application_service", "username": localpart},
            )
        except RemoteConflict as exc:
            if exc.errcode == USER_IN_USE:
                return
            raise
        LOGGER.info("Registered ghost user %s", localpart)

    async def sync(self, since: Optional[str], timeout_ms: int) -> SyncBatch:
        params: dict[str, Any] = {"timeout": timeout_ms, "filter": SYNC_FILTER}
        if since:
            params["since"] = since
        data = await self._request(
            "GET",
            "/sync",
            params=params,
            timeout=DEFAULT_TIMEOUT + timeout_ms / 1000,
        )
        next_batch = data.get("next_batch")
        if not next_batch:
            raise RemoteError("sync returned no next_batch")
        return SyncBatch(
            next_batch=next_batch,
            events=list(events_from_sync(data)),
        )
