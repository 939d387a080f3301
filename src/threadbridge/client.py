"""Matrix client factory and secret loading for threadbridge.

Tokens and salts are read via python-dotenv to keep them out of
config.json and the repository.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv

from threadbridge.adapters.matrix_client import MatrixClient

# Names are also the default redaction patterns for log output.
SECRET_ENV_NAMES = (
    "MATRIX_ACCESS_TOKEN",
    "MATRIX_AS_TOKEN",
    "MATRIX_HS_TOKEN",
    "POW_SECRET",
    "IDENTITY_SALT",
    "ADMIN_TOKEN",
)


def require_secret(name: str) -> str:
    """Return an environment secret, failing fast when it is missing."""

    load_dotenv()
    value = os.getenv(name)
    if not value:
        raise RuntimeError(f"Missing {name} in environment")
    return value


def optional_secret(name: str) -> Optional[str]:
    load_dotenv()
    return os.getenv(name) or None


def build_client(mode: str, homeserver_url: str, user_id: str) -> MatrixClient:
    """Create the primary Matrix client for the configured transport.

    Bot mode authenticates as a regular account (MATRIX_ACCESS_TOKEN);
    appservice mode uses the registration's as_token (MATRIX_AS_TOKEN).
    """

    if mode == "bot":
        token = require_secret("MATRIX_ACCESS_TOKEN")
    elif mode == "appservice":
        token = require_secret("MATRIX_AS_TOKEN")
    else:
        raise RuntimeError("matrix.mode must be 'bot' or 'appservice'")

    logging.getLogger(__name__).info("Initializing Matrix client for %s (%s mode)", user_id, mode)

    return MatrixClient(homeserver_url, token, user_id)
