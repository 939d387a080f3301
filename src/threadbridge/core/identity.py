"""Tenant id validation and guest identity helpers (core domain)."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import re
from typing import Optional

from threadbridge.core.errors import InvalidInput

# Reserved: joins tenant and slug inside room aliases, and service prefix and
# fingerprint inside ghost localparts.
SEPARATOR = "_"
TENANT_MAX_LEN = 64
SLUG_MAX_LEN = 128

_TENANT_RE = re.compile(r"^[a-z0-9.\-]+$")
_SLUG_FORBIDDEN = re.compile(r"[\s:#/]")


@dataclass(frozen=True)
class TenantId:
    """Validated site identifier. Construction fails on invalid input."""

    value: str

    def __post_init__(self) -> None:
        value = self.value
        if not isinstance(value, str) or not value:
            raise InvalidInput("Tenant id is required")
        if SEPARATOR in value:
            raise InvalidInput(
                "Tenant id cannot contain underscores ('_'); use '-' or '.' instead"
            )
        if len(value) > TENANT_MAX_LEN:
            raise InvalidInput(f"Tenant id is too long (max {TENANT_MAX_LEN} chars)")
        if not _TENANT_RE.match(value):
            raise InvalidInput("Tenant id may only contain a-z, 0-9, '.' and '-'")

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ThreadKey:
    """A comment thread: one tenant plus one post slug."""

    tenant: TenantId
    slug: str

    def __str__(self) -> str:
        return f"{self.tenant}/{self.slug}"


def validate_tenant_id(raw: str) -> TenantId:
    return TenantId(raw)


def validate_slug(raw: str) -> str:
    """Return the slug unchanged if it can be embedded in a room alias."""

    if not isinstance(raw, str) or not raw:
        raise InvalidInput("Slug is required")
    if len(raw) > SLUG_MAX_LEN:
        raise InvalidInput(f"Slug is too long (max {SLUG_MAX_LEN} chars)")
    if _SLUG_FORBIDDEN.search(raw):
        raise InvalidInput("Slug cannot contain whitespace, ':', '#' or '/'")
    return raw


def thread_key(tenant: str, slug: str) -> ThreadKey:
    return ThreadKey(validate_tenant_id(tenant), validate_slug(slug))


def fingerprint(email: Optional[str], guest_token: str, salt: str) -> str:
    """Deterministic salted hash identifying an anonymous author.

    The email is normalized (trimmed, lower-cased) so the same person typing
    their address differently still maps to the same ghost.
    """

    normalized_email = (email or "").strip().lower()
    payload = "\0".join([salt, normalized_email, guest_token])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def user_id(localpart: str, server_name: str) -> str:
    return f"@{localpart}:{server_name}"


def ghost_localpart(service_localpart: str, author_fingerprint: str) -> str:
    return f"{service_localpart}{SEPARATOR}{author_fingerprint}"


def ghost_user_id(service_localpart: str, author_fingerprint: str, server_name: str) -> str:
    return user_id(ghost_localpart(service_localpart, author_fingerprint), server_name)


def is_service_identity(sender: str, service_user_id: str, service_localpart: str) -> bool:
    """True for the primary service user and for every ghost it controls."""

    if sender == service_user_id:
        return True
    return sender.startswith(f"@{service_localpart}{SEPARATOR}")


def fingerprint_from_ghost(sender: str, service_localpart: str) -> Optional[str]:
    """Recover the fingerprint suffix from a ghost user id, if it is one."""

    prefix = f"@{service_localpart}{SEPARATOR}"
    if not sender.startswith(prefix):
        return None
    localpart = sender[len(prefix):].split(":", 1)[0]
    return localpart or None
