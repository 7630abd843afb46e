from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

from ledgersync.core.config import SyncSettings

CapReason = Literal["page_cap", "transaction_cap"]


def as_utc(moment: datetime) -> datetime:
    """Treat naive timestamps (as stored by SQLite) as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


@dataclass(frozen=True)
class SafetyPolicy:
    """Per-run throughput limits and the per-item cooldown.

    Hitting a cap only stops fetching. Everything fetched so far, and the
    cursor that goes with it, is still written.
    """

    page_cap: int
    transaction_cap: int
    cooldown: timedelta

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> SafetyPolicy:
        return cls(
            page_cap=settings.page_cap,
            transaction_cap=settings.transaction_cap,
            cooldown=settings.cooldown,
        )

    def cooldown_remaining(
        self,
        last_synced_at: datetime | None,
        now: datetime,
    ) -> timedelta | None:
        """Return the time left before the item may sync again, or None."""
        if last_synced_at is None:
            return None
        elapsed = as_utc(now) - as_utc(last_synced_at)
        if elapsed >= self.cooldown:
            return None
        return self.cooldown - elapsed

    def check(self, *, pages_fetched: int, transactions_seen: int) -> CapReason | None:
        """Check the caps after a page; transactions_seen counts added+modified."""
        if pages_fetched >= self.page_cap:
            return "page_cap"
        if transactions_seen >= self.transaction_cap:
            return "transaction_cap"
        return None
