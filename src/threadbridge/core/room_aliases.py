"""Helpers for working with threadbridge room aliases."""

from __future__ import annotations

from typing import Optional, Tuple

from threadbridge.core.errors import InvalidInput
from threadbridge.core.identity import SEPARATOR, TenantId, validate_slug

SPACE_PREFIX = "_space_"


def thread_alias_localpart(tenant: TenantId, slug: str) -> str:
    return f"{tenant.value}{SEPARATOR}{slug}"


def space_alias_localpart(tenant: TenantId) -> str:
    # Leading separator keeps space aliases from parsing as thread aliases.
    return f"{SPACE_PREFIX}{tenant.value}"


def full_alias(localpart: str, server_name: str) -> str:
    return f"#{localpart}:{server_name}"


def thread_alias(tenant: TenantId, slug: str, server_name: str) -> str:
    return full_alias(thread_alias_localpart(tenant, slug), server_name)


def space_alias(tenant: TenantId, server_name: str) -> str:
    return full_alias(space_alias_localpart(tenant), server_name)


def alias_localpart(alias: str) -> str:
    """Strip the sigil and server name from an alias."""

    return alias.lstrip("#").split(":", 1)[0]


def parse_thread_alias(alias: str) -> Optional[Tuple[TenantId, str]]:
    """Split a thread alias (full or localpart) into (tenant, slug)."""

    localpart = alias_localpart(alias)
    tenant_part, sep, slug = localpart.partition(SEPARATOR)
    if not sep or not tenant_part:
        return None
    try:
        return TenantId(tenant_part), validate_slug(slug)
    except InvalidInput:
        return None


def looks_like_event_id(value: str) -> bool:
    """Cheap structural check for a Matrix event id ("$opaque" or "$opaque:server")."""

    if not isinstance(value, str) or len(value) < 2 or len(value) > 255:
        return False
    if not value.startswith("$"):
        return False
    return not any(ch.isspace() for ch in value)
