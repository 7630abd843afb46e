from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import os

MAX_PAGE_SIZE = 500


@dataclass(frozen=True, slots=True)
class SyncSettings:
    """Process-wide safety envelope and storage settings for sync runs."""

    page_cap: int = 50
    transaction_cap: int = 10_000
    cooldown_seconds: int = 300
    write_chunk_size: int = 500
    page_size: int = MAX_PAGE_SIZE
    request_timeout_seconds: float = 30.0
    database_url: str = "sqlite:///ledgersync.db"

    def __post_init__(self) -> None:
        for name in ("page_cap", "transaction_cap", "write_chunk_size", "page_size"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be a positive integer")
        if self.cooldown_seconds < 0:
            raise ValueError("cooldown_seconds must not be negative")
        if self.page_size > MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be at most {MAX_PAGE_SIZE}")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if not self.database_url:
            raise ValueError("database_url must not be empty")

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.cooldown_seconds)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e


def load_sync_settings_from_env() -> SyncSettings:
    """Load sync settings from env and validate startup requirements."""
    defaults = SyncSettings()
    return SyncSettings(
        page_cap=_int_env("LEDGERSYNC_PAGE_CAP", defaults.page_cap),
        transaction_cap=_int_env(
            "LEDGERSYNC_TRANSACTION_CAP", defaults.transaction_cap
        ),
        cooldown_seconds=_int_env(
            "LEDGERSYNC_COOLDOWN_SECONDS", defaults.cooldown_seconds
        ),
        write_chunk_size=_int_env(
            "LEDGERSYNC_WRITE_CHUNK_SIZE", defaults.write_chunk_size
        ),
        page_size=_int_env("LEDGERSYNC_PAGE_SIZE", defaults.page_size),
        request_timeout_seconds=_float_env(
            "LEDGERSYNC_REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds
        ),
        database_url=os.environ.get(
            "LEDGERSYNC_DATABASE_URL", defaults.database_url
        ).strip(),
    )
