"""Access-credential lookup for linked items.

Credentials live outside the ledger database; the sync engine asks for them
per run and never writes them anywhere.
"""

from __future__ import annotations

from collections.abc import Mapping
import os
import re
from typing import Protocol

_ENV_PREFIX = "PLAID_ACCESS_TOKEN_"


class SecretNotFoundError(Exception):
    """Raised when no access credential is stored for an item."""


class SecretStore(Protocol):
    def get_access_token(self, item_id: str) -> str: ...


def env_var_for_item(item_id: str) -> str:
    """Return the environment variable name holding an item's access token."""
    suffix = re.sub(r"[^A-Z0-9]", "_", item_id.upper())
    return f"{_ENV_PREFIX}{suffix}"


class EnvSecretStore:
    """Secret store backed by process environment variables."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get_access_token(self, item_id: str) -> str:
        name = env_var_for_item(item_id)
        value = self._environ.get(name, "").strip()
        if not value:
            raise SecretNotFoundError(
                f"No access token for item {item_id!r} (expected {name})"
            )
        return value
