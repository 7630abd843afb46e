from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, ParamSpec, Protocol, TypeVar

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ledgersync.adapters.db.facade import DB
from ledgersync.classify.classifier import classify_with_source
from ledgersync.core.config import SyncSettings
from ledgersync.infra.clients.plaid import PlaidClientError
from ledgersync.infra.secrets import SecretNotFoundError, SecretStore
from ledgersync.models.transaction import SyncPage, Transaction
from ledgersync.sync.batch_writer import (
    BatchWriter,
    ChunkFailure,
    ClassifiedTransaction,
    WriteOutcome,
)
from ledgersync.sync.safety import CapReason, SafetyPolicy, as_utc

SyncStatus = Literal["cooldown", "completed", "capped", "failed"]

P = ParamSpec("P")
T = TypeVar("T")

FETCH_ERRORS: tuple[type[BaseException], ...] = (
    PlaidClientError,
    TimeoutError,
    OSError,
)
STORE_ERRORS: tuple[type[BaseException], ...] = (SQLAlchemyError, TimeoutError)

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"


class LedgerClient(Protocol):
    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
    ) -> SyncPage: ...


class SyncStateNotFoundError(LookupError):
    """Raised when syncing an item that was never linked."""


@dataclass
class SyncRunResult:
    """Outcome of one sync invocation. Never persisted itself."""

    item_id: str
    status: SyncStatus
    added: int = 0
    modified: int = 0
    removed: int = 0
    pages_fetched: int = 0
    capped: bool = False
    cap_reason: CapReason | None = None
    unresolved: int = 0
    cursor: str | None = None
    error: str | None = None
    retry_after_seconds: float | None = None
    failed_chunks: list[ChunkFailure] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.status == "cooldown":
            return "Synced recently; nothing to do until the cooldown passes."
        if self.status == "capped":
            return "Completed but capped; more data is pending."
        if self.status == "failed":
            return "Failed; will retry on the next scheduled sync."
        return "Completed."

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["message"] = self.message
        return data


@dataclass
class FetchedChanges:
    """Changes accumulated across all pages fetched in one run."""

    cursor: str | None
    added: list[Transaction] = field(default_factory=list)
    modified: list[Transaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    pages_fetched: int = 0
    cap_reason: CapReason | None = None
    error: str | None = None

    @property
    def transactions_seen(self) -> int:
        return len(self.added) + len(self.modified)


class SyncLogger:
    """Handles all logging for SyncOrchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def run_start(self, item_id: str, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(item_id=item_id, cursor=cursor_label).info(
            "Starting sync for item {} (cursor: {})", item_id, cursor_label
        )

    def cooldown_blocked(self, item_id: str, remaining_seconds: float) -> None:
        self._logger.bind(item_id=item_id, retry_after=remaining_seconds).info(
            "Sync for item {} skipped: cooldown has {:.0f}s left",
            item_id,
            remaining_seconds,
        )

    def page_fetched(
        self, added_count: int, modified_count: int, removed_count: int, page_num: int
    ) -> None:
        self._logger.bind(
            added=added_count,
            modified=modified_count,
            removed=removed_count,
            page=page_num,
        ).info(
            "Plaid fetch complete: {} added, {} modified, {} removed (page {})",
            added_count,
            modified_count,
            removed_count,
            page_num,
        )

    def capped(self, reason: CapReason, pages: int, transactions: int) -> None:
        self._logger.bind(
            reason=reason, pages=pages, transactions=transactions
        ).warning(
            "Sync capped by {} after {} pages and {} transactions; "
            "remaining changes will be fetched next run",
            reason,
            pages,
            transactions,
        )

    def fetch_failed(self, page_num: int, error: str) -> None:
        self._logger.bind(page=page_num, error=error).error(
            "Plaid fetch failed on page {}: {}", page_num, error
        )

    def pagination_restart(self) -> None:
        self._logger.warning(
            "Plaid data changed during pagination; discarding this run's pages"
        )

    def classification_summary(self, total: int, unresolved: int) -> None:
        self._logger.bind(total=total, unresolved=unresolved).info(
            "Classified {} added transactions ({} left for review)",
            total,
            unresolved,
        )

    def state_save_failed(self, item_id: str, error: str) -> None:
        self._logger.bind(item_id=item_id, error=error).error(
            "Could not persist sync state for item {}: {}", item_id, error
        )

    def run_complete(self, result: SyncRunResult) -> None:
        self._logger.bind(
            item_id=result.item_id,
            status=result.status,
            added=result.added,
            modified=result.modified,
            removed=result.removed,
            pages=result.pages_fetched,
        ).info(
            "Sync for item {} {}: {} added, {} modified, {} removed across {} pages",
            result.item_id,
            result.status,
            result.added,
            result.modified,
            result.removed,
            result.pages_fetched,
        )


class SyncOrchestrator:
    """
    Incremental sync for linked items: cooldown check, cursor-ordered page
    fetch under the safety caps, classification, chunked writes, and cursor
    persistence.

    Runs for the same item are serialized in-process; different items may run
    concurrently. Per-item locks exist only while a run for that item is in
    flight, so one orchestrator may be reused across event loops as long as
    its runs are not shared between loops at the same time.
    """

    def __init__(
        self,
        client: LedgerClient,
        db: DB,
        secrets: SecretStore,
        settings: SyncSettings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._db = db
        self._secrets = secrets
        self._settings = settings
        self._policy = SafetyPolicy.from_settings(settings)
        self._writer = BatchWriter(
            db,
            chunk_size=settings.write_chunk_size,
            timeout_seconds=settings.request_timeout_seconds,
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._logger = SyncLogger()
        self._item_locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    async def run(self, item_id: str) -> SyncRunResult:
        """Sync one linked item.

        Raises:
            SyncStateNotFoundError: If the item was never linked
        """
        lock = self._item_locks.setdefault(item_id, asyncio.Lock())
        self._lock_holders[item_id] = self._lock_holders.get(item_id, 0) + 1
        try:
            async with lock:
                result = await self._run_locked(item_id)
        finally:
            self._release_lock(item_id)
        if result.status != "cooldown":
            self._logger.run_complete(result)
        return result

    def _release_lock(self, item_id: str) -> None:
        self._lock_holders[item_id] -= 1
        if not self._lock_holders[item_id]:
            del self._lock_holders[item_id]
            del self._item_locks[item_id]

    async def run_all(self) -> list[SyncRunResult]:
        """Sync every linked, non-disconnected item concurrently."""
        items = await self._call(self._db.list_plaid_items)
        results = await asyncio.gather(*(self.run(item.item_id) for item in items))
        return list(results)

    async def _call(
        self, fn: Callable[P, T], /, *args: P.args, **kwargs: P.kwargs
    ) -> T:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=self._settings.request_timeout_seconds,
        )

    async def _run_locked(self, item_id: str) -> SyncRunResult:
        try:
            state = await self._call(self._db.get_sync_state, item_id)
        except STORE_ERRORS as e:
            return SyncRunResult(
                item_id=item_id,
                status="failed",
                error=f"Could not read sync state: {str(e) or type(e).__name__}",
            )
        if state is None:
            raise SyncStateNotFoundError(f"Plaid item {item_id} is not linked")

        remaining = self._policy.cooldown_remaining(
            state.last_synced_at, self._clock()
        )
        if remaining is not None:
            self._logger.cooldown_blocked(item_id, remaining.total_seconds())
            return SyncRunResult(
                item_id=item_id,
                status="cooldown",
                cursor=state.cursor,
                retry_after_seconds=remaining.total_seconds(),
            )

        self._logger.run_start(item_id, state.cursor)
        fetched = await self._fetch_changes(item_id, state.cursor)

        errors: list[str] = []
        if fetched.error:
            errors.append(fetched.error)

        outcome = WriteOutcome()
        unresolved = 0
        # Cursor that may be persisted: only past pages whose writes all landed.
        acknowledged_cursor = fetched.cursor
        try:
            classified = await self._classify(fetched.added)
        except STORE_ERRORS as e:
            errors.append(f"Could not load classification rules: {e}")
            acknowledged_cursor = state.cursor
        else:
            unresolved = sum(1 for c in classified if not c.classification.resolved)
            outcome = await self._writer.apply(
                item_id,
                added=classified,
                modified=fetched.modified,
                removed=fetched.removed,
            )
            if not outcome.ok:
                errors.append(outcome.error_summary() or "write failed")
                acknowledged_cursor = state.cursor

        error = "; ".join(errors) or None
        status: SyncStatus = "completed"
        if error:
            status = "failed"
        elif fetched.cap_reason is not None:
            status = "capped"
        result = SyncRunResult(
            item_id=item_id,
            status=status,
            added=outcome.added,
            modified=outcome.modified,
            removed=outcome.removed,
            pages_fetched=fetched.pages_fetched,
            capped=fetched.cap_reason is not None,
            cap_reason=fetched.cap_reason,
            unresolved=unresolved,
            cursor=acknowledged_cursor,
            error=error,
            failed_chunks=list(outcome.failures),
        )
        await self._save_state(result)
        return result

    async def _fetch_changes(
        self, item_id: str, start_cursor: str | None
    ) -> FetchedChanges:
        """Fetch pages in cursor order until done, capped, or failed.

        The returned cursor is the next_cursor of the last page that arrived
        intact, or start_cursor if none did.
        """
        changes = FetchedChanges(cursor=start_cursor)
        try:
            access_token = self._secrets.get_access_token(item_id)
        except SecretNotFoundError as e:
            changes.error = str(e)
            return changes

        while True:
            page_num = changes.pages_fetched + 1
            try:
                page = await self._call(
                    self._client.sync_transactions,
                    access_token,
                    cursor=changes.cursor or None,
                    count=self._settings.page_size,
                )
            except FETCH_ERRORS as e:
                error = str(e) or type(e).__name__
                self._logger.fetch_failed(page_num, error)
                if MUTATION_DURING_PAGINATION in error:
                    # Plaid requires restarting pagination from its first cursor.
                    self._logger.pagination_restart()
                    changes = FetchedChanges(cursor=start_cursor)
                changes.error = f"Remote fetch failed on page {page_num}: {error}"
                return changes

            changes.pages_fetched = page_num
            changes.added.extend(page["added"])
            changes.modified.extend(page["modified"])
            changes.removed.extend(r["transaction_id"] for r in page["removed"])
            changes.cursor = page["next_cursor"] or changes.cursor
            self._logger.page_fetched(
                len(page["added"]),
                len(page["modified"]),
                len(page["removed"]),
                page_num,
            )

            if not page["has_more"]:
                return changes

            reason = self._policy.check(
                pages_fetched=changes.pages_fetched,
                transactions_seen=changes.transactions_seen,
            )
            if reason is not None:
                changes.cap_reason = reason
                self._logger.capped(
                    reason, changes.pages_fetched, changes.transactions_seen
                )
                return changes

    async def _classify(self, added: list[Transaction]) -> list[ClassifiedTransaction]:
        if not added:
            return []
        # Read fresh every run so ranking reflects other items' recent wins.
        rules = await self._call(self._db.list_merchant_rules)
        mappings = await self._call(self._db.fetch_category_mappings)
        classified = [
            ClassifiedTransaction(
                txn=txn, classification=classify_with_source(txn, rules, mappings)
            )
            for txn in added
        ]
        self._logger.classification_summary(
            len(classified),
            sum(1 for c in classified if not c.classification.resolved),
        )
        return classified

    async def _save_state(self, result: SyncRunResult) -> None:
        finished_at = as_utc(self._clock()).replace(tzinfo=None)
        try:
            await self._call(
                self._db.save_sync_state,
                result.item_id,
                cursor=result.cursor,
                last_synced_at=finished_at,
                status="error" if result.status == "failed" else "active",
                last_error=result.error,
            )
        except STORE_ERRORS as e:
            error = f"Could not persist sync state: {str(e) or type(e).__name__}"
            self._logger.state_save_failed(result.item_id, error)
            result.status = "failed"
            result.error = "; ".join(filter(None, [result.error, error]))
