from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from ledgersync.adapters.db.facade import DB
from ledgersync.classify.classifier import UNRESOLVED, Classification
from ledgersync.models.transaction import Transaction
from ledgersync.sync.batch_writer import (
    BatchWriter,
    ClassifiedTransaction,
    chunked,
    dedupe_by_external_id,
    modification_row,
    transaction_row,
)

# Helper functions


def create_test_transaction(
    transaction_id: str,
    *,
    amount: float = 10.0,
    name: str = "Test Transaction",
    merchant_name: str | None = None,
    pending: bool = False,
) -> Transaction:
    return {
        "transaction_id": transaction_id,
        "account_id": "acc_123",
        "amount": amount,
        "iso_currency_code": "USD",
        "date": "2025-01-01",
        "name": name,
        "merchant_name": merchant_name,
        "pending": pending,
        "personal_finance_category": None,
    }


def classified(
    transaction_id: str,
    classification: Classification = UNRESOLVED,
    **kwargs: Any,
) -> ClassifiedTransaction:
    return ClassifiedTransaction(
        txn=create_test_transaction(transaction_id, **kwargs),
        classification=classification,
    )


def create_writer(db: DB, chunk_size: int = 500) -> BatchWriter:
    return BatchWriter(db, chunk_size=chunk_size, timeout_seconds=5.0)


def link(db: DB) -> None:
    db.link_item(item_id="item_1")


class FailingDB(DB):
    """DB that fails any write touching one of the given external ids."""

    def __init__(self, url: str, *, fail_ids: set[str]) -> None:
        super().__init__(url)
        self.fail_ids = fail_ids
        self.usage_calls: list[dict[int, int]] = []

    def _check(self, ids: Sequence[str]) -> None:
        if self.fail_ids.intersection(ids):
            raise SQLAlchemyError("disk I/O error")

    def upsert_transactions(self, rows: Sequence[Mapping[str, Any]]) -> int:
        self._check([r["external_id"] for r in rows])
        return super().upsert_transactions(rows)

    def update_transactions(self, rows: Sequence[Mapping[str, Any]]) -> int:
        self._check([r["external_id"] for r in rows])
        return super().update_transactions(rows)

    def delete_transactions_by_external_ids(self, external_ids: Sequence[str]) -> int:
        self._check(external_ids)
        return super().delete_transactions_by_external_ids(external_ids)

    def increment_rule_usage(self, counts: Mapping[int, int]) -> None:
        self.usage_calls.append(dict(counts))
        super().increment_rule_usage(counts)


def create_failing_db(fail_ids: set[str]) -> FailingDB:
    db = FailingDB("sqlite:///:memory:", fail_ids=fail_ids)
    db.create_schema()
    db.link_item(item_id="item_1")
    return db


# ---------------------------------------------------------------------------
# Row building
# ---------------------------------------------------------------------------


class TestRows:
    def test_debit_amount(self):
        row = transaction_row(
            "item_1", classified("t1", Classification(3, "rule", 1), amount=12.34)
        )

        assert row["amount_cents"] == 1234
        assert row["direction"] == "debit"
        assert row["category_id"] == 3
        assert row["category_method"] == "rule"
        assert row["reviewed"] is True
        assert row["source"] == "PLAID"

    def test_credit_amount_is_stored_as_magnitude(self):
        row = transaction_row("item_1", classified("t1", amount=-50.0))

        assert row["amount_cents"] == 5000
        assert row["direction"] == "credit"

    def test_unresolved_row_is_unreviewed(self):
        row = transaction_row("item_1", classified("t1"))

        assert row["category_id"] is None
        assert row["reviewed"] is False

    def test_merchant_name_falls_back_to_name(self):
        row = transaction_row("item_1", classified("t1", name="ACME PAYROLL"))

        assert row["merchant_name"] == "ACME PAYROLL"

    def test_modification_row_has_no_category_fields(self):
        row = modification_row(create_test_transaction("t1"))

        assert "category_id" not in row
        assert "category_method" not in row
        assert "reviewed" not in row


def test_chunked_splits_into_bounded_lists():
    assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
    assert list(chunked([], 2)) == []


def test_dedupe_keeps_last_delivery_in_first_seen_order():
    txns = [
        create_test_transaction("a", amount=1.0),
        create_test_transaction("b", amount=2.0),
        create_test_transaction("a", amount=3.0),
    ]

    result = dedupe_by_external_id(txns, lambda t: t["transaction_id"])

    assert [(t["transaction_id"], t["amount"]) for t in result] == [
        ("a", 3.0),
        ("b", 2.0),
    ]


# ---------------------------------------------------------------------------
# apply()
# ---------------------------------------------------------------------------


class TestApply:
    def test_writes_all_three_passes(self, seeded_db: DB):
        link(seeded_db)
        seeded_db.upsert_transactions(
            [transaction_row("item_1", classified(t)) for t in ("old_1", "old_2")]
        )
        writer = create_writer(seeded_db)

        outcome = asyncio.run(
            writer.apply(
                "item_1",
                added=[classified("new_1"), classified("new_2")],
                modified=[create_test_transaction("old_1", amount=99.0)],
                removed=["old_2"],
            )
        )

        assert outcome.ok
        assert (outcome.added, outcome.modified, outcome.removed) == (2, 1, 1)
        modified = seeded_db.get_transaction_by_external_id("old_1")
        assert modified is not None
        assert modified.amount_cents == 9900
        assert seeded_db.get_transaction_by_external_id("old_2") is None

    def test_empty_batch_writes_nothing(self, seeded_db: DB):
        outcome = asyncio.run(
            create_writer(seeded_db).apply("item_1", added=[], modified=[], removed=[])
        )

        assert outcome.ok
        assert (outcome.added, outcome.modified, outcome.removed) == (0, 0, 0)

    def test_added_and_modified_in_same_batch_ends_modified(self, seeded_db: DB):
        link(seeded_db)
        writer = create_writer(seeded_db)

        asyncio.run(
            writer.apply(
                "item_1",
                added=[classified("t1", amount=10.0)],
                modified=[create_test_transaction("t1", amount=25.0, pending=True)],
                removed=[],
            )
        )

        txn = seeded_db.get_transaction_by_external_id("t1")
        assert txn is not None
        assert txn.amount_cents == 2500
        assert txn.pending is True

    def test_duplicate_adds_write_one_row(self, seeded_db: DB):
        link(seeded_db)
        writer = create_writer(seeded_db)

        outcome = asyncio.run(
            writer.apply(
                "item_1",
                added=[classified("t1", amount=1.0), classified("t1", amount=2.0)],
                modified=[],
                removed=[],
            )
        )

        txn = seeded_db.get_transaction_by_external_id("t1")
        assert outcome.added == 1
        assert txn is not None
        assert txn.amount_cents == 200

    def test_failed_chunk_is_recorded_and_others_commit(self):
        db = create_failing_db(fail_ids={"t2"})
        writer = create_writer(db, chunk_size=2)

        outcome = asyncio.run(
            writer.apply(
                "item_1",
                added=[classified(f"t{i}") for i in range(5)],
                modified=[],
                removed=[],
            )
        )

        # Chunks: [t0, t1], [t2, t3], [t4]; the middle one fails.
        assert not outcome.ok
        assert outcome.added == 3
        assert len(outcome.failures) == 1
        failure = outcome.failures[0]
        assert failure.operation == "upsert"
        assert failure.chunk_index == 1
        assert failure.size == 2
        assert "disk I/O error" in failure.error
        assert db.get_transaction_by_external_id("t0") is not None
        assert db.get_transaction_by_external_id("t2") is None
        assert db.get_transaction_by_external_id("t4") is not None
        assert outcome.error_summary() == (
            "upsert chunk 1 (2 rows): disk I/O error"
        )

    def test_failed_upsert_does_not_stop_later_passes(self):
        db = create_failing_db(fail_ids={"bad"})
        db.upsert_transactions([transaction_row("item_1", classified("gone"))])
        writer = create_writer(db)

        outcome = asyncio.run(
            writer.apply(
                "item_1", added=[classified("bad")], modified=[], removed=["gone"]
            )
        )

        assert outcome.added == 0
        assert outcome.removed == 1
        assert [f.operation for f in outcome.failures] == ["upsert"]

    def test_rule_usage_counted_for_committed_chunks_only(self):
        db = create_failing_db(fail_ids={"t2"})
        rule = db.save_merchant_rule("%MART%", 1)
        writer = create_writer(db, chunk_size=2)
        win = Classification(category_id=1, method="rule", rule_id=rule.rule_id)

        asyncio.run(
            writer.apply(
                "item_1",
                added=[classified(f"t{i}", win) for i in range(4)],
                modified=[],
                removed=[],
            )
        )

        assert db.usage_calls == [{rule.rule_id: 2}]
        assert db.list_merchant_rules()[0].match_count == 2

    def test_taxonomy_classifications_do_not_touch_rule_usage(self):
        db = create_failing_db(fail_ids=set())
        writer = create_writer(db)

        asyncio.run(
            writer.apply(
                "item_1",
                added=[classified("t1", Classification(1, "taxonomy"))],
                modified=[],
                removed=[],
            )
        )

        assert db.usage_calls == []
