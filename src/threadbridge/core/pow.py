"""Stateless proof-of-work admission guard (core domain).

A challenge is ``{issued_at_hex}.{nonce_hex}.{signature}`` where the
signature is an HMAC-SHA256 over the first two parts, so verification needs
no storage. The client must find a proof such that
``sha256(challenge + proof)`` starts with ``difficulty`` zero nibbles.

Statelessness alone allows replay inside the validity window; with
``single_use`` enabled the guard also remembers consumed challenges until
they would have expired anyway.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import secrets
import time
from itertools import count
from typing import Callable

from threadbridge.core.config import PowConfig

LOGGER = logging.getLogger(__name__)


class PowGuard:
    """Issue and verify signed, time-bounded proof-of-work challenges."""

    def __init__(self, config: PowConfig, clock: Callable[[], float] = time.time) -> None:
        if not config.secret:
            raise ValueError("PoW secret must not be empty")
        self._config = config
        self._clock = clock
        self._consumed: dict[str, float] = {}

    @property
    def difficulty(self) -> int:
        return self._config.difficulty

    def issue_challenge(self) -> str:
        issued_at = int(self._clock())
        payload = f"{issued_at:x}.{secrets.token_hex(8)}"
        return f"{payload}.{self._sign(payload)}"

    def verify(self, challenge: str, proof: str) -> bool:
        parts = challenge.split(".")
        if len(parts) != 3:
            return False
        ts_hex, nonce_hex, signature = parts

        try:
            issued_at = int(ts_hex, 16)
        except ValueError:
            return False

        now = int(self._clock())
        if issued_at > now + self._config.future_skew_secs:
            return False
        if now - issued_at > self._config.max_age_secs:
            return False

        expected = self._sign(f"{ts_hex}.{nonce_hex}")
        if not hmac.compare_digest(signature, expected):
            return False

        if not meets_difficulty(challenge, proof, self._config.difficulty):
            return False

        if self._config.single_use:
            self._forget_expired(now)
            if challenge in self._consumed:
                LOGGER.info("Rejected replayed PoW challenge")
                return False
            self._consumed[challenge] = issued_at + self._config.max_age_secs

        return True

    def _sign(self, payload: str) -> str:
        digest = hmac.new(self._config.secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")

    def _forget_expired(self, now: int) -> None:
        expired = [key for key, expires_at in self._consumed.items() if expires_at < now]
        for key in expired:
            del self._consumed[key]


def meets_difficulty(challenge: str, proof: str, difficulty: int) -> bool:
    digest = hashlib.sha256(f"{challenge}{proof}".encode("utf-8")).hexdigest()
    return digest.startswith("0" * difficulty)


def solve(challenge: str, difficulty: int) -> str:
    """Brute-force a proof for ``challenge``; what a browser widget does in JS."""

    for nonce in count():
        proof = str(nonce)
        if meets_difficulty(challenge, proof, difficulty):
            return proof
    raise RuntimeError("unreachable")
