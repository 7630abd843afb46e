from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal, TypeVar

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import SOURCE_PLAID
from ledgersync.classify.classifier import Classification, provider_category_code
from ledgersync.models.transaction import Transaction

WriteOperation = Literal["upsert", "update", "delete"]

T = TypeVar("T")

# Errors that fail a single chunk without aborting the remaining ones.
CHUNK_ERRORS: tuple[type[BaseException], ...] = (
    SQLAlchemyError,
    TimeoutError,
    ValueError,
    KeyError,
)


@dataclass
class ClassifiedTransaction:
    txn: Transaction
    classification: Classification


@dataclass
class ChunkFailure:
    operation: WriteOperation
    chunk_index: int
    size: int
    error: str


@dataclass
class WriteOutcome:
    """Rows written per pass, counted from committed chunks only."""

    added: int = 0
    modified: int = 0
    removed: int = 0
    failures: list[ChunkFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def error_summary(self) -> str | None:
        if not self.failures:
            return None
        parts = [
            f"{f.operation} chunk {f.chunk_index} ({f.size} rows): {f.error}"
            for f in self.failures
        ]
        return "; ".join(parts)


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def dedupe_by_external_id(txns: Sequence[T], key: Callable[[T], str]) -> list[T]:
    """Keep the last delivery of each external id, in first-seen order."""
    latest: dict[str, T] = {}
    for txn in txns:
        latest[key(txn)] = txn
    return list(latest.values())


def _amount_fields(amount: float) -> dict[str, Any]:
    # Plaid: positive = money out of the account.
    return {
        "amount_cents": round(abs(amount) * 100),
        "direction": "debit" if amount >= 0 else "credit",
    }


def transaction_row(item_id: str, classified: ClassifiedTransaction) -> dict[str, Any]:
    """Build the upsert row for an added transaction."""
    txn = classified.txn
    classification = classified.classification
    return {
        "external_id": txn["transaction_id"],
        "source": SOURCE_PLAID,
        "item_id": item_id,
        "account_id": txn["account_id"],
        "posted_at": date.fromisoformat(txn["date"]),
        **_amount_fields(txn["amount"]),
        "currency": txn.get("iso_currency_code") or "USD",
        "description": txn["name"],
        "merchant_name": txn.get("merchant_name") or txn["name"],
        "provider_category": provider_category_code(txn),
        "pending": txn["pending"],
        "category_id": classification.category_id,
        "category_method": classification.method,
        "reviewed": classification.resolved,
    }


def modification_row(txn: Transaction) -> dict[str, Any]:
    """Build the update row for a modified transaction (no category fields)."""
    return {
        "external_id": txn["transaction_id"],
        "posted_at": date.fromisoformat(txn["date"]),
        **_amount_fields(txn["amount"]),
        "description": txn["name"],
        "merchant_name": txn.get("merchant_name") or txn["name"],
        "pending": txn["pending"],
    }


class BatchWriterLogger:
    """Handles all logging for BatchWriter."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def pass_start(self, operation: WriteOperation, rows: int, chunks: int) -> None:
        self._logger.bind(operation=operation, rows=rows, chunks=chunks).info(
            "Writing {} rows ({}) in {} chunks", rows, operation, chunks
        )

    def chunk_failed(
        self, operation: WriteOperation, chunk_index: int, size: int, error: str
    ) -> None:
        self._logger.bind(
            operation=operation, chunk=chunk_index, size=size, error=error
        ).error(
            "Write chunk {} ({}, {} rows) failed: {}",
            chunk_index,
            operation,
            size,
            error,
        )

    def usage_update_failed(self, error: str) -> None:
        self._logger.bind(error=error).warning(
            "Could not record merchant rule usage: {}", error
        )


class BatchWriter:
    """Applies add/modify/remove deltas to the ledger in bounded chunks.

    Each pass is chunked independently and each chunk commits on its own.
    A failed chunk is recorded and skipped; committed chunks stay committed.
    """

    def __init__(
        self,
        db: DB,
        *,
        chunk_size: int,
        timeout_seconds: float,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be a positive integer")
        self._db = db
        self._chunk_size = chunk_size
        self._timeout_seconds = timeout_seconds
        self._logger = BatchWriterLogger()

    async def apply(
        self,
        item_id: str,
        *,
        added: Sequence[ClassifiedTransaction],
        modified: Sequence[Transaction],
        removed: Sequence[str],
    ) -> WriteOutcome:
        """Write all deltas: added first, then modified, then removed.

        Running modified after added means a transaction delivered in both
        lists ends up with the modified values.
        """
        outcome = WriteOutcome()

        unique_added = dedupe_by_external_id(added, lambda c: c.txn["transaction_id"])
        rule_wins: Counter[int] = Counter()
        for chunk_index, chunk in self._chunks("upsert", unique_added):
            written = await self._run_chunk(
                outcome,
                "upsert",
                chunk_index,
                len(chunk),
                lambda chunk=chunk: self._db.upsert_transactions(
                    [transaction_row(item_id, c) for c in chunk]
                ),
            )
            if written is None:
                continue
            outcome.added += written
            rule_wins.update(
                c.classification.rule_id
                for c in chunk
                if c.classification.rule_id is not None
            )

        unique_modified = dedupe_by_external_id(modified, lambda t: t["transaction_id"])
        for chunk_index, chunk in self._chunks("update", unique_modified):
            written = await self._run_chunk(
                outcome,
                "update",
                chunk_index,
                len(chunk),
                lambda chunk=chunk: self._db.update_transactions(
                    [modification_row(t) for t in chunk]
                ),
            )
            if written is not None:
                outcome.modified += written

        unique_removed = list(dict.fromkeys(removed))
        for chunk_index, chunk in self._chunks("delete", unique_removed):
            written = await self._run_chunk(
                outcome,
                "delete",
                chunk_index,
                len(chunk),
                lambda chunk=chunk: self._db.delete_transactions_by_external_ids(
                    chunk
                ),
            )
            if written is not None:
                outcome.removed += written

        await self._record_rule_usage(rule_wins)
        return outcome

    def _chunks(
        self, operation: WriteOperation, items: Sequence[T]
    ) -> Iterator[tuple[int, list[T]]]:
        if not items:
            return iter(())
        chunk_count = -(-len(items) // self._chunk_size)
        self._logger.pass_start(operation, len(items), chunk_count)
        return enumerate(chunked(items, self._chunk_size))

    async def _run_chunk(
        self,
        outcome: WriteOutcome,
        operation: WriteOperation,
        chunk_index: int,
        size: int,
        write: Callable[[], int],
    ) -> int | None:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(write), timeout=self._timeout_seconds
            )
        except CHUNK_ERRORS as e:
            error = str(e) or type(e).__name__
            self._logger.chunk_failed(operation, chunk_index, size, error)
            outcome.failures.append(
                ChunkFailure(
                    operation=operation,
                    chunk_index=chunk_index,
                    size=size,
                    error=error,
                )
            )
            return None

    async def _record_rule_usage(self, rule_wins: Counter[int]) -> None:
        # Best effort: usage only orders rules, so a lost increment is harmless.
        if not rule_wins:
            return
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._db.increment_rule_usage, dict(rule_wins)),
                timeout=self._timeout_seconds,
            )
        except (SQLAlchemyError, TimeoutError) as e:
            self._logger.usage_update_failed(str(e) or type(e).__name__)
