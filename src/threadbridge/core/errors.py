"""Error taxonomy shared by the core and its adapters.

Callers distinguish outcomes by exception type: a UI needs to tell
"not yours to edit" (PermissionDenied) apart from "already gone" (NotFound),
and a timeout apart from an explicit failure.
"""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for all threadbridge failures."""


class InvalidInput(BridgeError):
    """Malformed tenant id, slug or event id reference."""


class PermissionDenied(BridgeError):
    """Fingerprint mismatch on a guest edit/delete, or a bad admin token."""


class NotFound(BridgeError):
    """Comment, room or remote resource does not exist."""


class RemoteError(BridgeError):
    """The Matrix homeserver rejected a request."""

    def __init__(self, message: str, errcode: Optional[str] = None, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.errcode = errcode
        self.status = status


class RemoteTransient(RemoteError):
    """Network failure, timeout or overloaded homeserver; safe to retry."""


class RemoteConflict(RemoteError):
    """A room alias or user id is already taken (lost a creation race)."""


class Internal(BridgeError):
    """Local cache or serialization failure."""


class AdmissionRejected(BridgeError):
    """Proof-of-work challenge missing, expired, forged or unsolved."""


class CommandTimeout(BridgeError):
    """No reply arrived for a submitted command within the caller's deadline.

    The command may still complete; unlike an explicit failure this outcome
    is ambiguous, so callers should re-read state before retrying.
    """
