"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from threadbridge.core.identity import user_id


@dataclass(frozen=True)
class BridgeConfig:
    """Identity and naming settings shared by the router, reconciler and executor."""

    server_name: str
    service_localpart: str
    identity_salt: str
    owner_id: Optional[str] = None

    @property
    def service_user_id(self) -> str:
        return user_id(self.service_localpart, self.server_name)


@dataclass(frozen=True)
class PowConfig:
    """Proof-of-work admission settings."""

    secret: str
    difficulty: int = 4
    max_age_secs: int = 300
    future_skew_secs: int = 30
    single_use: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Pull-driver polling settings."""

    poll_timeout_ms: int = 30_000
    retry_interval_secs: float = 5.0
    shutdown_grace_secs: float = 10.0
